import logging
from typing import Optional

from sqlalchemy.orm import Session

from lms_subscription_svc.models.subscription import Subscription
from lms_subscription_svc.subscription_state import SubscriptionUpdate, merge


class SubscriptionStore:
    """
    The single write path for subscription records.

    Each ``apply_*`` call is one transaction: the row is re-read under a row
    lock, the update is merged against the stored values, and the result is
    committed. Gating conditions therefore always see the current stored
    status, never a copy read earlier in the request.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_by_account(self, account_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(Subscription.account_id == account_id).first()

    def get_by_subscription_id(self, subscription_id: str) -> Optional[Subscription]:
        return (self.db.query(Subscription)
                .filter(Subscription.stripe_subscription_id == subscription_id)
                .first())

    def apply_by_account(self, account_id: str, update: SubscriptionUpdate) -> Optional[Subscription]:
        query = self.db.query(Subscription).filter(Subscription.account_id == account_id)
        return self._apply(query, update, f"account {account_id}")

    def apply_by_subscription_id(self, subscription_id: str, update: SubscriptionUpdate) -> Optional[Subscription]:
        query = self.db.query(Subscription).filter(Subscription.stripe_subscription_id == subscription_id)
        return self._apply(query, update, f"subscription {subscription_id}")

    def _apply(self, query, update: SubscriptionUpdate, label: str) -> Optional[Subscription]:
        try:
            record = query.with_for_update().populate_existing().first()
            if record is None:
                self.db.rollback()
                return None

            before = record.status
            merged = merge(record.snapshot(), update)
            if record.apply_snapshot(merged):
                self.db.add(record)
                self.db.commit()
                self.db.refresh(record)
                logging.info(f"{update.event_kind.value}: {label} updated "
                             f"(status {before} -> {record.status}, "
                             f"period end {record.current_period_end})")
            else:
                self.db.commit()
                logging.info(f"{update.event_kind.value}: {label} already up to date")
            return record
        except Exception as e:
            self.db.rollback()
            logging.error(e, exc_info=True)
            raise
