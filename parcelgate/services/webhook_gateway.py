"""
Webhook Gateway

Inbound carrier callbacks: carrier lookup -> signature check over the raw
body -> payload decode -> per-event dedup, persist, notify.

Rejections (unknown/disabled carrier, bad signature, undecodable body)
raise WebhookError subclasses before anything is written. Once past those
gates, each event is handled on its own: one bad event never discards its
siblings, and a notification failure never undoes a saved event.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from parcelgate.core.exceptions import CarrierDisabledError, SignatureError, ValidationError
from parcelgate.modules.shipping.events import CanonicalEvent
from parcelgate.services.notification_service import NotificationDispatcher
from parcelgate.services.tracking_repository import (
    SaveOutcome,
    TrackingEventRepository,
    WebhookSubscriptionRepository,
)
from parcelgate.services.webhook_processors import ProcessorPool

logger = logging.getLogger(__name__)


@dataclass
class GatewayResult:
    carrier_code: str
    events_received: int = 0
    events_processed: int = 0
    duplicates: int = 0
    failures: List[str] = field(default_factory=list)


class WebhookGateway:
    """
    Args:
        processors: Carrier processors
        events: Tracking event persistence
        dispatcher: Customer notifications, optional
        subscriptions: Used to link events to a host track id when the
            payload carries none
    """

    def __init__(
        self,
        processors: ProcessorPool,
        events: TrackingEventRepository,
        dispatcher: Optional[NotificationDispatcher] = None,
        subscriptions: Optional[WebhookSubscriptionRepository] = None,
    ):
        self.processors = processors
        self.events = events
        self.dispatcher = dispatcher
        self.subscriptions = subscriptions

    async def receive(
        self,
        carrier_code: Optional[str],
        headers: Mapping[str, str],
        raw_body: bytes,
    ) -> GatewayResult:
        if not carrier_code:
            raise ValidationError("Missing carrier code")

        carrier_code = carrier_code.strip().lower()
        processor = self.processors.get(carrier_code)

        if not processor.is_enabled():
            raise CarrierDisabledError(
                f"Webhook processing is disabled for {carrier_code}",
                details={"carrier": carrier_code},
            )

        if not processor.validate_signature(headers, raw_body):
            logger.warning(f"[WEBHOOK] Invalid signature for {carrier_code} webhook")
            raise SignatureError("Invalid signature", details={"carrier": carrier_code})

        payload = processor.parse_payload(raw_body)
        events = processor.process(payload)

        result = GatewayResult(carrier_code=carrier_code, events_received=len(events))
        for event in events:
            try:
                await self._handle_event(event, result)
            except Exception as e:
                logger.error(
                    f"[WEBHOOK] Failed to store {carrier_code} event {event.event_code} "
                    f"for {event.tracking_number}: {e}"
                )
                result.failures.append(f"{event.tracking_number}:{event.event_code}")

        logger.info(
            f"[WEBHOOK] {carrier_code}: {result.events_processed} new, "
            f"{result.duplicates} duplicate, {len(result.failures)} failed"
        )
        return result

    async def _handle_event(self, event: CanonicalEvent, result: GatewayResult) -> None:
        if await self.events.event_exists(event.tracking_number, event.event_code, event.event_timestamp):
            result.duplicates += 1
            return

        if event.track_id is None and self.subscriptions is not None:
            subscription = await self.subscriptions.get_tracking_subscription(event.carrier_code, event.tracking_number)
            if subscription is not None:
                event.track_id = subscription.track_id

        outcome, row = await self.events.save(event)
        if outcome == SaveOutcome.DUPLICATE:
            result.duplicates += 1
            return
        result.events_processed += 1

        if self.dispatcher is not None:
            await self.dispatcher.queue_notification(row)
