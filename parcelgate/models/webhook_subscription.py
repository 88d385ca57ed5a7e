"""
WebhookSubscription model

Registrations with a carrier for push notifications, either for a whole
account or for a single tracking number.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index

from parcelgate.core.database import Base


class SubscriptionType(str, enum.Enum):
    ACCOUNT = "account"
    TRACKING = "tracking"


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"  # Created locally, carrier registration not confirmed
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class WebhookSubscription(Base):
    """
    Carrier push-notification registration.

    At most one active subscription per (carrier_code, subscription_type,
    target); the repository checks before creating.
    """
    __tablename__ = "webhook_subscriptions"
    __table_args__ = (
        Index("ix_webhook_subscriptions_carrier_status", "carrier_code", "status"),
        Index("ix_webhook_subscriptions_tracking", "carrier_code", "tracking_number"),
        Index("ix_webhook_subscriptions_account", "carrier_code", "account_number"),
    )

    id = Column(Integer, primary_key=True, index=True)
    carrier_code = Column(String(20), nullable=False)
    subscription_type = Column(String(20), nullable=False, default=SubscriptionType.TRACKING.value)
    webhook_id = Column(String(128), nullable=True)  # Carrier-side id

    # Target (one of)
    account_number = Column(String(64), nullable=True)
    tracking_number = Column(String(64), nullable=True)
    track_id = Column(Integer, nullable=True)

    callback_url = Column(String(500), nullable=True)
    security_token = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=SubscriptionStatus.PENDING.value)
    events_filter = Column(JSON, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def target(self) -> str:
        if self.subscription_type == SubscriptionType.ACCOUNT.value:
            return self.account_number or ""
        return self.tracking_number or ""

    def __repr__(self):
        return (
            f"<WebhookSubscription(id={self.id}, carrier={self.carrier_code}, "
            f"type={self.subscription_type}, target={self.target}, status={self.status})>"
        )
