"""
Canonical tracking events.

Carrier webhooks and tracking lookups are normalized into CanonicalEvent
before anything is persisted. (tracking_number, event_code,
event_timestamp) is the dedup key.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from parcelgate.models.tracking_event import TrackingEvent, TrackingEventType

_COMPACT_DATE = re.compile(r"^\d{8}$")
_COMPACT_TIME = re.compile(r"^\d{6}$")

# Checked in order; first match wins
STATUS_KEYWORDS: Tuple[Tuple[str, TrackingEventType], ...] = (
    ("out for delivery", TrackingEventType.OUT_FOR_DELIVERY),
    ("delivered", TrackingEventType.DELIVERED),
    ("picked up", TrackingEventType.PICKED_UP),
    ("pre-shipment", TrackingEventType.LABEL_CREATED),
    ("label created", TrackingEventType.LABEL_CREATED),
    ("shipping label", TrackingEventType.LABEL_CREATED),
    ("cancel", TrackingEventType.CANCELLED),
    ("exception", TrackingEventType.EXCEPTION),
    ("alert", TrackingEventType.EXCEPTION),
    ("in transit", TrackingEventType.IN_TRANSIT),
    ("arrived", TrackingEventType.IN_TRANSIT),
    ("departed", TrackingEventType.IN_TRANSIT),
)


def _column_widths() -> Dict[str, int]:
    return {
        column.name: column.type.length
        for column in TrackingEvent.__table__.columns
        if isinstance(getattr(column.type, "length", None), int)
    }


_WIDTHS = _column_widths()


def classify_description(text: Optional[str]) -> TrackingEventType:
    """Event type from free-text status, UNKNOWN when nothing matches."""
    lowered = (text or "").lower()
    for keyword, event_type in STATUS_KEYWORDS:
        if keyword in lowered:
            return event_type
    return TrackingEventType.UNKNOWN


def parse_timestamp(value: Optional[str], time_part: Optional[str] = None) -> Optional[datetime]:
    """
    Parse carrier timestamps into aware UTC datetimes.

    Accepts ISO-8601 (with or without offset, "Z" suffix), "YYYY-MM-DD HH:MM:SS"
    and the compact UPS form (date "20240301", time "140000"). Naive values
    are taken as UTC. Returns None when nothing parses.
    """
    if not value:
        return None
    value = value.strip()

    if _COMPACT_DATE.match(value):
        value = f"{value[:4]}-{value[4:6]}-{value[6:]}"
    if time_part:
        time_part = time_part.strip()
        if _COMPACT_TIME.match(time_part):
            time_part = f"{time_part[:2]}:{time_part[2:4]}:{time_part[4:]}"
        value = f"{value}T{time_part}"
    if value.endswith("Z"):
        value = f"{value[:-1]}+00:00"

    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class CanonicalEvent:
    """A normalized tracking event, before persistence."""
    tracking_number: str
    carrier_code: str
    event_code: str
    event_type: TrackingEventType
    event_timestamp: datetime
    description: str = ""
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    postal_code: Optional[str] = None
    signature: Optional[str] = None
    image_url: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    track_id: Optional[int] = None

    def __post_init__(self):
        # Carrier text longer than its tracking_events column is cut, never rejected
        for name, width in _WIDTHS.items():
            value = getattr(self, name, None)
            if isinstance(value, str) and len(value) > width:
                setattr(self, name, value[:width])

    @property
    def dedup_key(self) -> Tuple[str, str, datetime]:
        return (self.tracking_number, self.event_code, self.event_timestamp)

    @property
    def location(self) -> str:
        return ", ".join(part for part in (self.city, self.state, self.country) if part)


@dataclass
class TrackingSummary:
    """Current status of a shipment plus its events, newest first."""
    tracking_number: str
    carrier_code: str
    status: TrackingEventType
    status_description: str = ""
    service_type: Optional[str] = None
    expected_delivery_date: Optional[str] = None
    delivered_at: Optional[datetime] = None
    signed_by: Optional[str] = None
    events: List[CanonicalEvent] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.status == TrackingEventType.DELIVERED
