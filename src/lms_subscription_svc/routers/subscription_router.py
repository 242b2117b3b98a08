import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from lms_subscription_svc.cancellation import cancel_subscription_for_account, subscription_summary
from lms_subscription_svc.checkout import start_signup_checkout
from lms_subscription_svc.config import get_settings
from lms_subscription_svc.errors import SubscriptionServiceError
from lms_subscription_svc.models.account import Account
from lms_subscription_svc.models.base import get_db
from lms_subscription_svc.security import TokenIssuer, get_current_account, get_token_issuer
from lms_subscription_svc.stripe_event_processor import process_event
from lms_subscription_svc.stripe_integration import StripeIntegration
from lms_subscription_svc.verification import verify_checkout_session

router = APIRouter()


def get_provider() -> StripeIntegration:
    return StripeIntegration()


def _http_error(e: SubscriptionServiceError) -> HTTPException:
    if e.status_code >= 500:
        logging.error(e, exc_info=True)
    return HTTPException(status_code=e.status_code, detail=str(e))


class SignupSessionRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


@router.post("/signup-session", status_code=201)
async def create_signup_session(signup_request: SignupSessionRequest, db: Session = Depends(get_db),
                                provider: StripeIntegration = Depends(get_provider)):
    try:
        session = start_signup_checkout(db, provider, signup_request.name,
                                        signup_request.email, signup_request.password)
    except SubscriptionServiceError as e:
        raise _http_error(e)
    return {"message": "Checkout session created successfully.", **session}


@router.get("/checkout-session/{session_id}", status_code=200)
async def get_checkout_session(session_id: str, db: Session = Depends(get_db),
                               provider: StripeIntegration = Depends(get_provider),
                               token_issuer: TokenIssuer = Depends(get_token_issuer)):
    try:
        return verify_checkout_session(db, provider, session_id, token_issuer)
    except SubscriptionServiceError as e:
        raise _http_error(e)


@router.post("/cancel", status_code=200)
async def cancel_subscription(account: Account = Depends(get_current_account),
                              db: Session = Depends(get_db),
                              provider: StripeIntegration = Depends(get_provider)):
    try:
        subscription = cancel_subscription_for_account(db, provider, account.id)
    except SubscriptionServiceError as e:
        raise _http_error(e)
    return {
        "message": "Subscription will be cancelled at the end of the current billing period.",
        "subscription": subscription,
    }


@router.get("/me", status_code=200)
async def get_my_subscription(account: Account = Depends(get_current_account),
                              db: Session = Depends(get_db)):
    try:
        return {"subscription": subscription_summary(db, account)}
    except SubscriptionServiceError as e:
        raise _http_error(e)


@router.post("/webhook", status_code=200)
async def process_webhook(request: Request, db: Session = Depends(get_db),
                          provider: StripeIntegration = Depends(get_provider)):
    # Signature is computed over the exact bytes Stripe sent.
    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe-Signature header")
    endpoint_secret = get_settings().stripe_endpoint_secret
    if not endpoint_secret:
        logging.error("STRIPE_ENDPOINT_SECRET is not set, rejecting webhook")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                            detail="Stripe endpoint secret not configured")

    try:
        event = provider.construct_event(payload, sig_header, endpoint_secret)
    except SubscriptionServiceError as e:
        raise _http_error(e)

    try:
        process_event(event, db, provider)
    except SubscriptionServiceError as e:
        raise _http_error(e)
    except Exception as e:
        logging.error(e, exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                            detail="Error processing webhook event")

    return {"received": True}
