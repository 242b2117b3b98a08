import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from lms_subscription_svc.errors import ValidationError
from lms_subscription_svc.models.account import ROLE_PARENT, Account
from lms_subscription_svc.security import TokenIssuer
from lms_subscription_svc.stripe_integration import StripeIntegration
from lms_subscription_svc.subscription_state import (
    EventKind,
    SubscriptionStatus,
    SubscriptionUpdate,
    from_timestamp,
    object_id,
    resolve_period_end,
)
from lms_subscription_svc.subscription_store import SubscriptionStore


def is_paid(session: Dict[str, Any]) -> bool:
    return session.get('payment_status') == 'paid' and session.get('status') == 'complete'


def _session_view(session: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": session.get('id'),
        "status": session.get('status'),
        "mode": session.get('mode'),
        "payment_status": session.get('payment_status'),
        "customer": object_id(session.get('customer')),
        "subscription": object_id(session.get('subscription')),
    }


def verify_checkout_session(db: Session, provider: StripeIntegration, session_id: str,
                            token_issuer: Optional[TokenIssuer] = None) -> Dict[str, Any]:
    """
    Reconcile a returning parent's checkout session with their subscription record.

    Called when the parent lands on the signup success page, usually before
    the ``checkout.session.completed`` webhook arrives. Safe to call any number
    of times with the same session id.

    :return: ``{"session": ..., "account": ..., "token": ...}``; ``token`` is only
        set once the session is paid and the account may log in.
    :raises NotFoundError: if Stripe does not know the session.
    :raises ValidationError: if the session carries no account id.
    :raises ProviderError: if fetching the subscription from Stripe fails.
    """
    if not session_id or not session_id.strip():
        raise ValidationError('sessionId is required.')

    session = provider.get_checkout_session(session_id)
    account_id = (session.get('metadata') or {}).get('userId')
    if not account_id:
        raise ValidationError(f"Checkout session {session_id} has no account id in its metadata.")

    account = db.query(Account).filter(Account.id == account_id).first()
    store = SubscriptionStore(db)
    token = None

    eligible = account is not None and account.is_active and account.role == ROLE_PARENT
    if is_paid(session) and eligible:
        record = store.get_by_account(account.id)
        subscription_id = object_id(session.get('subscription'))
        if record is not None and record.status != SubscriptionStatus.ACTIVE.value and subscription_id:
            subscription = provider.get_subscription(subscription_id)
            store.apply_by_account(account.id, SubscriptionUpdate(
                event_kind=EventKind.CHECKOUT_VERIFIED,
                provider_status=subscription.get('status'),
                customer_id=object_id(session.get('customer')),
                subscription_id=subscription_id,
                start_date=from_timestamp(subscription.get('created')),
                current_period_end=resolve_period_end(subscription),
            ))
            logging.info(f"Checkout session {session_id} verified for account {account.id}")
        elif not subscription_id:
            logging.warning(f"Checkout session {session_id} is paid but has no subscription")

        token = (token_issuer or TokenIssuer()).create_access_token(account.id)

    if account is not None:
        db.refresh(account)

    return {
        "session": _session_view(session),
        "account": account.to_dict() if account is not None else None,
        "token": token,
    }
