"""
TrackingEvent model

Canonical, carrier-agnostic tracking events received through webhooks.
(tracking_number, event_code, event_timestamp) is unique: it is the only
deduplication key, so carriers re-delivering the same event never create a
second row.
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime,
    Text, JSON, Index, UniqueConstraint
)

from parcelgate.core.database import Base


class TrackingEventType(str, enum.Enum):
    """Normalized event types shared by all carriers."""
    LABEL_CREATED = "label_created"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    EXCEPTION = "exception"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def label(self) -> str:
        return EVENT_TYPE_LABELS[self]

    @classmethod
    def parse(cls, value: str) -> "TrackingEventType":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


EVENT_TYPE_LABELS = {
    TrackingEventType.LABEL_CREATED: "Label Created",
    TrackingEventType.PICKED_UP: "Picked Up",
    TrackingEventType.IN_TRANSIT: "In Transit",
    TrackingEventType.OUT_FOR_DELIVERY: "Out for Delivery",
    TrackingEventType.DELIVERED: "Delivered",
    TrackingEventType.EXCEPTION: "Exception",
    TrackingEventType.CANCELLED: "Cancelled",
    TrackingEventType.UNKNOWN: "Unknown",
}


class TrackingEvent(Base):
    """
    Individual tracking event for a shipment.

    Only email_sent/email_sent_at are ever updated after insert.
    """
    __tablename__ = "tracking_events"
    __table_args__ = (
        UniqueConstraint(
            "tracking_number", "event_code", "event_timestamp",
            name="uq_tracking_events_dedup_key",
        ),
        Index("ix_tracking_events_tracking_number", "tracking_number"),
        Index("ix_tracking_events_pending_email", "email_sent", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    track_id = Column(Integer, nullable=True)  # Host shipment track link

    tracking_number = Column(String(64), nullable=False)
    carrier_code = Column(String(20), nullable=False)

    # Event details
    event_code = Column(String(64), nullable=False)  # Carrier event code
    event_type = Column(String(32), nullable=False, default=TrackingEventType.UNKNOWN.value)
    description = Column(String(500), nullable=True)
    event_timestamp = Column(DateTime(timezone=True), nullable=False)

    # Location
    city = Column(String(100), nullable=True)
    state = Column(String(100), nullable=True)
    country = Column(String(100), nullable=True)  # ISO code or a full name (USPS)
    postal_code = Column(String(20), nullable=True)

    # Proof of delivery
    signature = Column(String(255), nullable=True)
    image_url = Column(Text, nullable=True)

    # Carrier raw data
    raw_payload = Column(JSON, nullable=True)

    # Notification tracking
    email_sent = Column(Boolean, nullable=False, default=False)
    email_sent_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def event_type_enum(self) -> TrackingEventType:
        return TrackingEventType.parse(self.event_type)

    def __repr__(self):
        return (
            f"<TrackingEvent(id={self.id}, tracking={self.tracking_number}, "
            f"code={self.event_code}, type={self.event_type})>"
        )
