from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from lms_subscription_svc.models.base import Base
from lms_subscription_svc.subscription_state import SubscriptionSnapshot, SubscriptionStatus, as_utc


def _iso(value):
    # SQLite hands back naive datetimes; everything is stored as UTC.
    value = as_utc(value)
    return value.isoformat() if value else None


class Subscription(Base):
    """
    Billing state of one account, reconciled against the Stripe subscription.
    """
    __tablename__ = 'subscriptions'

    account_id = Column(String(36), ForeignKey('accounts.id'), primary_key=True)
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_subscription_id = Column(String(255), unique=True, nullable=True, index=True)
    status = Column(String(20), nullable=False, default='inactive')
    start_date = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True,
                        default=lambda: datetime.now(timezone.utc))

    account = relationship("Account", back_populates="subscription")

    def snapshot(self) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            status=SubscriptionStatus(self.status or SubscriptionStatus.INACTIVE),
            customer_id=self.stripe_customer_id,
            subscription_id=self.stripe_subscription_id,
            start_date=as_utc(self.start_date),
            current_period_end=as_utc(self.current_period_end),
        )

    def apply_snapshot(self, merged: SubscriptionSnapshot) -> bool:
        """Copy merged values onto the row. Returns True if anything changed."""
        if merged == self.snapshot():
            return False
        self.status = merged.status.value
        self.stripe_customer_id = merged.customer_id
        self.stripe_subscription_id = merged.subscription_id
        self.start_date = merged.start_date
        self.current_period_end = merged.current_period_end
        self.updated_at = datetime.now(timezone.utc)
        return True

    def to_dict(self) -> dict:
        return {
            "customerId": self.stripe_customer_id,
            "subscriptionId": self.stripe_subscription_id,
            "status": self.status,
            "startDate": _iso(self.start_date),
            "currentPeriodEnd": _iso(self.current_period_end),
        }

    def __repr__(self) -> str:
        return (f"<Subscription(account={self.account_id}, id={self.stripe_subscription_id}, "
                f"status={self.status})>")
