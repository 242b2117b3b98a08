import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from lms_subscription_svc.errors import NotFoundError, PolicyViolation, ValidationError
from lms_subscription_svc.models.account import ROLE_PARENT, Account
from lms_subscription_svc.stripe_integration import StripeIntegration
from lms_subscription_svc.subscription_state import SubscriptionStatus, as_utc, commitment_ends_at, from_timestamp
from lms_subscription_svc.subscription_store import SubscriptionStore


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def subscription_summary(db: Session, account: Account, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Current subscription state plus when the parent may cancel."""
    now = as_utc(now) or datetime.now(timezone.utc)
    record = SubscriptionStore(db).get_by_account(account.id)
    if record is None:
        raise NotFoundError('No subscription record found for this account.')

    ends_at = commitment_ends_at(record.start_date, account.created_at)
    summary = record.to_dict()
    summary.update({
        "commitmentEndsAt": _iso(ends_at),
        "canCancel": (account.role == ROLE_PARENT
                      and record.stripe_subscription_id is not None
                      and record.status == SubscriptionStatus.ACTIVE.value
                      and now >= ends_at),
    })
    return summary


def cancel_subscription_for_account(db: Session, provider: StripeIntegration, account_id: str,
                                    now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Ask Stripe to end the account's subscription at the end of the current period.

    The local status stays ``active``; the ``customer.subscription.deleted``
    webhook moves it to ``canceled`` once the period has elapsed.

    :raises NotFoundError: if the account has no subscription record.
    :raises PolicyViolation: for non-parent accounts, or before the one-year
        commitment has elapsed.
    :raises ValidationError: if there is no active Stripe subscription.
    """
    now = as_utc(now) or datetime.now(timezone.utc)
    record = SubscriptionStore(db).get_by_account(account_id)
    if record is None or record.account is None:
        raise NotFoundError('Account not found.')

    account = record.account
    if account.role != ROLE_PARENT:
        raise PolicyViolation('Only parents can cancel subscriptions.')
    if not record.stripe_subscription_id:
        raise ValidationError('No active subscription found.')
    if record.status != SubscriptionStatus.ACTIVE.value:
        raise ValidationError('Subscription is not active.')

    ends_at = commitment_ends_at(record.start_date, account.created_at)
    if now < ends_at:
        logging.info(f"Cancellation refused for account {account_id}: commitment ends {ends_at.isoformat()}")
        raise PolicyViolation(
            'Subscription cannot be cancelled until the one-year commitment period is complete.',
            status_code=400,
        )

    subscription = provider.cancel_subscription(record.stripe_subscription_id)
    logging.info(f"Scheduled cancellation of subscription {record.stripe_subscription_id} "
                 f"for account {account_id} at period end")

    period_end = subscription.get('current_period_end')
    return {
        "id": subscription.get('id', record.stripe_subscription_id),
        "cancelAtPeriodEnd": bool(subscription.get('cancel_at_period_end')),
        "currentPeriodEnd": _iso(from_timestamp(period_end)) if period_end else _iso(as_utc(record.current_period_end)),
    }
