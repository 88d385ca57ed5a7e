"""
Tracking notification dispatcher

Decides whether a persisted tracking event should produce a customer email,
builds the template variables and hands them to a NotificationSender.

Sending is best-effort: a failure never touches the persisted event, and
process_pending is the recovery path for anything left unsent.
"""
import enum
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from parcelgate.core.config import Settings, settings as app_settings
from parcelgate.models.carrier import carrier_name, tracking_url
from parcelgate.models.tracking_event import TrackingEvent, TrackingEventType
from parcelgate.services.email_provider import NotificationSender, TrackContext, TrackLookup
from parcelgate.services.tracking_repository import TrackingEventRepository

logger = logging.getLogger(__name__)


class DispatchOutcome(str, enum.Enum):
    SENT = "sent"
    SKIPPED = "skipped"  # no order behind the track id
    FAILED = "failed"


def format_event_timestamp(value: datetime) -> str:
    """e.g. "March 1, 2024 at 2:00 PM"."""
    hour = value.hour % 12 or 12
    return f"{value.strftime('%B')} {value.day}, {value.year} at {hour}:{value.minute:02d} {value.strftime('%p')}"


def format_location(event: TrackingEvent) -> str:
    return ", ".join(part for part in (event.city, event.state, event.country) if part)


class NotificationDispatcher:
    """
    Customer notifications for tracking events.

    Args:
        events: Repository used to mark events sent and list pending ones
        sender: Email primitive (template, recipient, variables)
        track_lookup: Resolves a track id to order/customer context
    """

    def __init__(
        self,
        events: TrackingEventRepository,
        sender: NotificationSender,
        track_lookup: TrackLookup,
        config: Optional[Settings] = None,
    ):
        self.events = events
        self.sender = sender
        self.track_lookup = track_lookup
        self.config = config or app_settings

    def should_notify(self, event: TrackingEvent) -> bool:
        if not event.track_id:
            return False
        if not self.config.TRACKING_NOTIFICATIONS_ENABLED:
            return False
        allowed = self.config.TRACKING_NOTIFICATION_EVENTS
        if not allowed:
            return True
        return TrackingEventType.parse(event.event_type).value in allowed

    def delivery_photo_url(self, event: TrackingEvent, context: TrackContext) -> Optional[str]:
        if not event.image_url:
            return None
        if not self.config.POD_PHOTOS_ENABLED:
            return None
        if context.pod_photo_opt_out:
            logger.debug(f"[NOTIFY] Customer opted out of delivery photos for order {context.order_increment_id}")
            return None
        return event.image_url

    def build_variables(self, event: TrackingEvent, context: TrackContext) -> Dict[str, Any]:
        event_type = TrackingEventType.parse(event.event_type)
        return {
            "customer_name": context.customer_name or "Customer",
            "order_increment_id": context.order_increment_id,
            "tracking_number": event.tracking_number,
            "carrier_code": event.carrier_code,
            "carrier_name": carrier_name(event.carrier_code),
            "event_type": event_type.value,
            "event_type_label": event_type.label,
            "event_description": event.description or "",
            "event_timestamp": format_event_timestamp(event.event_timestamp),
            "location": format_location(event),
            "tracking_url": tracking_url(event.carrier_code, event.tracking_number),
            "delivery_photo_url": self.delivery_photo_url(event, context),
            "signature_name": event.signature,
        }

    async def dispatch(self, event: TrackingEvent) -> DispatchOutcome:
        """Send one notification. Does not check should_notify."""
        try:
            context = await self.track_lookup.get_track_context(event.track_id)
        except Exception as e:
            logger.warning(f"[NOTIFY] Cannot load order for tracking notification (track_id={event.track_id}): {e}")
            return DispatchOutcome.SKIPPED
        if context is None:
            logger.warning(f"[NOTIFY] Cannot load order for tracking notification (track_id={event.track_id})")
            return DispatchOutcome.SKIPPED

        result = await self.sender.send(
            self.config.TRACKING_EMAIL_TEMPLATE,
            context.customer_email,
            context.customer_name,
            self.build_variables(event, context),
            self.config.TRACKING_EMAIL_SENDER,
            store_id=context.store_id,
        )
        if not result.success:
            logger.error(
                f"[NOTIFY] Failed to send tracking notification for {event.tracking_number} "
                f"({event.event_type}): {result.error}"
            )
            return DispatchOutcome.FAILED

        logger.info(
            f"[NOTIFY] Tracking notification sent: order {context.order_increment_id}, "
            f"{event.tracking_number} ({event.event_type})"
        )
        return DispatchOutcome.SENT

    async def queue_notification(self, event: TrackingEvent) -> None:
        """
        Notify for a newly persisted event.

        Failures are logged and leave the event pending for process_pending;
        nothing is raised to the caller.
        """
        if not self.should_notify(event):
            return
        try:
            outcome = await self.dispatch(event)
            if outcome != DispatchOutcome.FAILED:
                await self.events.mark_email_sent(event.id)
        except Exception as e:
            logger.error(
                f"[NOTIFY] Failed to send tracking notification for {event.tracking_number} "
                f"({event.carrier_code}, {event.event_type}): {e}"
            )

    async def process_pending(self, limit: int = 100) -> int:
        """
        Retry events not yet marked sent, oldest first.

        Every event that completes an attempt is marked sent whatever the
        outcome, so a permanently failing address is tried once here and
        then dropped. Returns the number of events marked.
        """
        pending: List[TrackingEvent] = await self.events.get_pending_email_events(limit)
        processed = 0
        for event in pending:
            try:
                if self.should_notify(event):
                    await self.dispatch(event)
                await self.events.mark_email_sent(event.id)
                processed += 1
            except Exception as e:
                logger.error(f"[NOTIFY] Failed to process pending notification {event.id}: {e}")
        return processed
