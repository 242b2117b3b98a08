import logging
from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lms_subscription_svc.config import Settings, get_settings
from lms_subscription_svc.errors import DuplicateError, ValidationError
from lms_subscription_svc.models.account import ROLE_PARENT, Account
from lms_subscription_svc.models.subscription import Subscription
from lms_subscription_svc.security import hash_password
from lms_subscription_svc.stripe_integration import StripeIntegration
from lms_subscription_svc.subscription_state import SubscriptionStatus


def start_signup_checkout(db: Session, provider: StripeIntegration, name: Optional[str],
                          email: Optional[str], password: Optional[str],
                          settings: Optional[Settings] = None) -> Dict[str, str]:
    """
    Create an inactive parent account and a Stripe Checkout Session for it.

    :return: ``{"sessionId": ..., "url": ...}`` for the client redirect.
    :raises ValidationError: if name, email or password is missing.
    :raises DuplicateError: if the email is already registered.
    """
    settings = settings or get_settings()
    name = (name or "").strip()
    email = (email or "").strip().lower()
    if not name or not email or not password:
        raise ValidationError('Name, email, and password are required.')

    if db.query(Account).filter(Account.email == email).first() is not None:
        raise DuplicateError('An account with this email already exists. Please log in instead.')

    account = Account(name=name, email=email, password_hash=hash_password(password),
                      role=ROLE_PARENT, is_active=True)
    account.subscription = Subscription(status=SubscriptionStatus.INACTIVE.value)
    db.add(account)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DuplicateError('An account with this email already exists. Please log in instead.') from e
    except Exception as e:
        db.rollback()
        logging.error(e, exc_info=True)
        raise
    db.refresh(account)
    logging.info(f"Created inactive parent account {account.id} for {email}")

    session = provider.create_checkout_session(
        email=account.email,
        account_id=account.id,
        success_url=settings.success_url,
        cancel_url=settings.cancel_url,
    )
    logging.info(f"Checkout session {session.get('id')} created for account {account.id}")
    return {"sessionId": session.get("id"), "url": session.get("url")}
