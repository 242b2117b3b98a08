"""
Subscription status state machine and per-field merge rules.

Two writers update the same subscription record without a shared lock: the
checkout verification request and the Stripe webhook stream. Every write goes
through :func:`merge` so that the result does not depend on arrival order:

* ``status`` only moves along transitions :func:`next_status` authorizes,
  and checkout data never revives a ``canceled`` record.
* ``start_date``, ``stripe_customer_id`` and ``stripe_subscription_id`` are
  write-once.
* ``current_period_end`` never moves backwards while the subscription is
  live, and a missing value never erases a stored one.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from dateutil.relativedelta import relativedelta


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class EventKind(str, Enum):
    CHECKOUT_VERIFIED = "checkout_verified"
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAID = "invoice_paid"
    OTHER = "other"


LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)

# Fallback billing interval when Stripe omits the period end.
BILLING_INTERVAL = relativedelta(months=1)
COMMITMENT_PERIOD = relativedelta(years=1)


def next_status(current: SubscriptionStatus, event_kind: EventKind,
                provider_status: Optional[str] = None) -> SubscriptionStatus:
    """
    Return the status a record in ``current`` moves to for ``event_kind``.

    :param current: status currently stored.
    :param event_kind: what kind of update is being applied.
    :param provider_status: Stripe subscription status carried by the update, if any.
    """
    current = SubscriptionStatus(current)

    if event_kind == EventKind.SUBSCRIPTION_DELETED:
        return SubscriptionStatus.CANCELED

    if event_kind in (EventKind.CHECKOUT_VERIFIED, EventKind.CHECKOUT_COMPLETED):
        # Only an inactive record can be activated by checkout, so a stale
        # verification never undoes a deletion.
        if current != SubscriptionStatus.INACTIVE:
            return current
        if provider_status in ("active", "trialing"):
            return SubscriptionStatus.ACTIVE
        return SubscriptionStatus.INACTIVE

    if event_kind == EventKind.SUBSCRIPTION_UPDATED:
        if provider_status in ("active", "trialing"):
            return SubscriptionStatus.ACTIVE
        if provider_status == "past_due":
            return SubscriptionStatus.PAST_DUE
        if provider_status in ("canceled", "unpaid"):
            return SubscriptionStatus.CANCELED
        return current

    return current


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(value: Any) -> Optional[datetime]:
    """Convert a Stripe Unix timestamp to an aware UTC datetime."""
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def object_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def resolve_period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    """
    Period end of a Stripe subscription object.

    Newer API versions only report periods on subscription items. If no end is
    reported at all, the period start plus one month is used as an
    approximation; the next ``customer.subscription.updated`` event corrects it.
    """
    item = _first_item(subscription)
    end = subscription.get("current_period_end") or item.get("current_period_end")
    if end:
        return from_timestamp(end)

    start = subscription.get("current_period_start") or item.get("current_period_start")
    if start:
        period_end = from_timestamp(start) + BILLING_INTERVAL
        logging.info(f"Subscription {subscription.get('id')} has no period end, "
                     f"using period start + 1 month: {period_end.isoformat()}")
        return period_end

    logging.warning(f"Subscription {subscription.get('id')} carries no period dates")
    return None


def commitment_ends_at(start_date: Optional[datetime], fallback: Optional[datetime]) -> datetime:
    anchor = as_utc(start_date) or as_utc(fallback) or datetime.now(timezone.utc)
    return anchor + COMMITMENT_PERIOD


@dataclass(frozen=True)
class SubscriptionUpdate:
    """
    Values one writer wants to apply. ``None`` means "not known by this writer".
    """
    event_kind: EventKind
    provider_status: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    start_date: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    status: SubscriptionStatus
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    start_date: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


def _write_once(field: str, stored, incoming):
    if stored is None:
        return incoming
    if incoming is not None and incoming != stored:
        logging.warning(f"Ignoring {field}={incoming}: already set to {stored}")
    return stored


def merge(stored: SubscriptionSnapshot, update: SubscriptionUpdate) -> SubscriptionSnapshot:
    """
    Combine the stored record with an update. Pure; the caller persists the result.
    """
    status = next_status(stored.status, update.event_kind, update.provider_status)

    period_end = as_utc(stored.current_period_end)
    incoming_end = as_utc(update.current_period_end)
    if incoming_end is not None:
        if period_end is None or stored.status not in LIVE_STATUSES or incoming_end >= period_end:
            period_end = incoming_end

    return SubscriptionSnapshot(
        status=status,
        customer_id=_write_once("customer_id", stored.customer_id, update.customer_id),
        subscription_id=_write_once("subscription_id", stored.subscription_id, update.subscription_id),
        start_date=as_utc(stored.start_date) or as_utc(update.start_date),
        current_period_end=period_end,
    )
