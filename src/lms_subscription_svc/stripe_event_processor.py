import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from lms_subscription_svc.errors import ProviderError, ValidationError
from lms_subscription_svc.stripe_integration import StripeIntegration
from lms_subscription_svc.subscription_state import (
    EventKind,
    SubscriptionUpdate,
    from_timestamp,
    object_id,
    resolve_period_end,
)
from lms_subscription_svc.subscription_store import SubscriptionStore

EVENT_KINDS = {
    'checkout.session.completed': EventKind.CHECKOUT_COMPLETED,
    'customer.subscription.updated': EventKind.SUBSCRIPTION_UPDATED,
    'customer.subscription.deleted': EventKind.SUBSCRIPTION_DELETED,
    'invoice.paid': EventKind.INVOICE_PAID,
    'invoice.payment_succeeded': EventKind.INVOICE_PAID,
}


def event_kind(event_type: str) -> EventKind:
    return EVENT_KINDS.get(event_type, EventKind.OTHER)


def process_event(event: dict, db: Session, provider: StripeIntegration) -> None:
    """
    Apply a verified Stripe event to the matching subscription record.

    Events referencing an unknown account or subscription are logged and
    acknowledged; the account may not have synced yet or may belong to another
    environment. Replaying an event leaves the record unchanged.

    :param event: Dictionary representing the Stripe event payload.
    :param db: SQLAlchemy Session instance.
    :param provider: Stripe client used to fetch the full subscription.
    :raises ValidationError: if the event has no type.
    :raises Exception: on commit failures, so Stripe redelivers the event.
    """
    event_type = event.get('type')
    if not event_type:
        error_msg = "Missing 'type' in event payload"
        logging.error(error_msg)
        raise ValidationError(error_msg)

    event_id = event.get('id', 'N/A')
    obj = (event.get('data') or {}).get('object') or {}
    kind = event_kind(event_type)
    logging.info(f"Received event {event_type} (ID: {event_id})")

    if kind == EventKind.CHECKOUT_COMPLETED:
        _handle_checkout_completed(event_id, obj, db, provider)
    elif kind == EventKind.SUBSCRIPTION_UPDATED:
        _handle_subscription_updated(event_id, obj, db)
    elif kind == EventKind.SUBSCRIPTION_DELETED:
        _handle_subscription_deleted(event_id, obj, db)
    elif kind == EventKind.INVOICE_PAID:
        _handle_invoice_paid(event_id, obj, db)
    else:
        logging.info(f"Unhandled event type: {event_type} for event {event_id}. No action taken.")


def _handle_checkout_completed(event_id: str, session: Dict[str, Any], db: Session,
                               provider: StripeIntegration) -> None:
    if session.get('mode') != 'subscription':
        logging.info(f"Event {event_id}: ignoring non-subscription checkout session {session.get('id')}")
        return

    account_id = (session.get('metadata') or {}).get('userId')
    if not account_id:
        logging.warning(f"Event {event_id}: checkout session {session.get('id')} has no userId metadata")
        return

    subscription_id = object_id(session.get('subscription'))
    if not subscription_id:
        logging.warning(f"Event {event_id}: checkout session {session.get('id')} has no subscription id")
        return

    store = SubscriptionStore(db)
    customer_id = object_id(session.get('customer'))
    try:
        subscription = provider.get_subscription(subscription_id)
    except ProviderError as e:
        # Keep the identifiers the event itself carries; the status arrives
        # with the customer.subscription.updated event.
        logging.error(f"Event {event_id}: could not fetch subscription {subscription_id}: {e}")
        record = store.apply_by_account(account_id, SubscriptionUpdate(
            event_kind=EventKind.OTHER,
            customer_id=customer_id,
            subscription_id=subscription_id,
        ))
        if record is None:
            logging.warning(f"Event {event_id}: account {account_id} not found")
        return

    record = store.apply_by_account(account_id, SubscriptionUpdate(
        event_kind=EventKind.CHECKOUT_COMPLETED,
        provider_status=subscription.get('status'),
        customer_id=customer_id,
        subscription_id=subscription_id,
        start_date=from_timestamp(subscription.get('created')),
        current_period_end=resolve_period_end(subscription),
    ))
    if record is None:
        logging.warning(f"Event {event_id}: account {account_id} not found for subscription {subscription_id}")


def _handle_subscription_updated(event_id: str, subscription: Dict[str, Any], db: Session) -> None:
    subscription_id = subscription.get('id')
    if not subscription_id:
        logging.warning(f"Event {event_id}: subscription object has no id")
        return
    record = SubscriptionStore(db).apply_by_subscription_id(subscription_id, SubscriptionUpdate(
        event_kind=EventKind.SUBSCRIPTION_UPDATED,
        provider_status=subscription.get('status'),
        start_date=from_timestamp(subscription.get('created')),
        current_period_end=resolve_period_end(subscription),
    ))
    if record is None:
        logging.warning(f"Event {event_id}: no account found for subscription {subscription_id}")


def _handle_subscription_deleted(event_id: str, subscription: Dict[str, Any], db: Session) -> None:
    subscription_id = subscription.get('id')
    if not subscription_id:
        logging.warning(f"Event {event_id}: subscription object has no id")
        return
    record = SubscriptionStore(db).apply_by_subscription_id(
        subscription_id, SubscriptionUpdate(event_kind=EventKind.SUBSCRIPTION_DELETED))
    # A record not yet linked to this subscription id is not found here, and a
    # later verification can still activate it. See "Deleted event before the
    # record is linked" in DESIGN.md.
    if record is None:
        logging.warning(f"Event {event_id}: no account found for deleted subscription {subscription_id}")


def invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = object_id(invoice.get('subscription'))
    if subscription_id:
        return subscription_id
    details = (invoice.get('parent') or {}).get('subscription_details') or {}
    return object_id(details.get('subscription'))


def invoice_period_end(invoice: Dict[str, Any]):
    # The line item period is the subscription period; invoice.period_end is not.
    lines = (invoice.get('lines') or {}).get('data') or []
    if lines:
        end = (lines[0].get('period') or {}).get('end')
        if end:
            return from_timestamp(end)
    return from_timestamp(invoice.get('period_end'))


def _handle_invoice_paid(event_id: str, invoice: Dict[str, Any], db: Session) -> None:
    subscription_id = invoice_subscription_id(invoice)
    if not subscription_id:
        logging.info(f"Event {event_id}: invoice {invoice.get('id')} is not for a subscription, skipping")
        return

    period_end = invoice_period_end(invoice)
    if period_end is None:
        logging.warning(f"Event {event_id}: invoice {invoice.get('id')} has no period end information")
        return

    record = SubscriptionStore(db).apply_by_subscription_id(subscription_id, SubscriptionUpdate(
        event_kind=EventKind.INVOICE_PAID,
        current_period_end=period_end,
    ))
    if record is None:
        logging.warning(f"Event {event_id}: no account found for invoice subscription {subscription_id}")
