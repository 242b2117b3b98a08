import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.orm import relationship

from lms_subscription_svc.models.base import Base

ROLE_PARENT = "parent"
ROLE_ADMIN = "admin"
ROLE_TEACHER = "teacher"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Account(Base):
    """
    A login account. Parents own exactly one subscription record.
    """
    __tablename__ = 'accounts'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=ROLE_PARENT)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    subscription = relationship("Subscription", back_populates="account", uselist=False)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
        if self.subscription is not None:
            data["subscription"] = self.subscription.to_dict()
        return data

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, email={self.email}, role={self.role})>"
