"""
Tracking persistence

Repositories over TrackingEvent and WebhookSubscription. Both take an
AsyncSession and flush rather than commit; the caller owns the transaction
(get_db / get_db_session commit on exit).
"""
import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from parcelgate.models.tracking_event import TrackingEvent
from parcelgate.models.webhook_subscription import (
    SubscriptionStatus,
    SubscriptionType,
    WebhookSubscription,
)
from parcelgate.modules.shipping.events import CanonicalEvent

logger = logging.getLogger(__name__)


class SaveOutcome(str, enum.Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"


class TrackingEventRepository:
    """Canonical tracking events. Rows are never deleted; only the email flags change."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(self, event: CanonicalEvent) -> Tuple[SaveOutcome, Optional[TrackingEvent]]:
        """
        Insert an event.

        A unique-constraint violation on (tracking_number, event_code,
        event_timestamp) means another delivery of the same event won the
        race; it is reported as DUPLICATE, not raised. The new row is
        returned with CREATED.
        """
        row = TrackingEvent(
            track_id=event.track_id,
            tracking_number=event.tracking_number,
            carrier_code=event.carrier_code,
            event_code=event.event_code,
            event_type=event.event_type.value,
            description=event.description,
            event_timestamp=event.event_timestamp,
            city=event.city,
            state=event.state,
            country=event.country,
            postal_code=event.postal_code,
            signature=event.signature,
            image_url=event.image_url,
            raw_payload=event.raw_payload,
            email_sent=False,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(row)
                await self.db.flush()
        except IntegrityError:
            logger.info(
                f"[TRACKING] Duplicate event {event.event_code} for {event.tracking_number} "
                f"at {event.event_timestamp.isoformat()}"
            )
            return SaveOutcome.DUPLICATE, None
        return SaveOutcome.CREATED, row

    async def get_by_dedup_key(self, event: CanonicalEvent) -> Optional[TrackingEvent]:
        result = await self.db.execute(
            select(TrackingEvent).where(
                and_(
                    TrackingEvent.tracking_number == event.tracking_number,
                    TrackingEvent.event_code == event.event_code,
                    TrackingEvent.event_timestamp == event.event_timestamp,
                )
            )
        )
        return result.scalar_one_or_none()

    async def event_exists(self, tracking_number: str, event_code: str, event_timestamp: datetime) -> bool:
        result = await self.db.execute(
            select(TrackingEvent.id).where(
                and_(
                    TrackingEvent.tracking_number == tracking_number,
                    TrackingEvent.event_code == event_code,
                    TrackingEvent.event_timestamp == event_timestamp,
                )
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def get_by_tracking_number(self, tracking_number: str) -> List[TrackingEvent]:
        """All events of a shipment, newest first."""
        result = await self.db.execute(
            select(TrackingEvent)
            .where(TrackingEvent.tracking_number == tracking_number)
            .order_by(TrackingEvent.event_timestamp.desc())
        )
        return list(result.scalars().all())

    async def get_by_track_id(self, track_id: int) -> List[TrackingEvent]:
        result = await self.db.execute(
            select(TrackingEvent)
            .where(TrackingEvent.track_id == track_id)
            .order_by(TrackingEvent.event_timestamp.desc())
        )
        return list(result.scalars().all())

    async def get_latest_event(self, tracking_number: str) -> Optional[TrackingEvent]:
        result = await self.db.execute(
            select(TrackingEvent)
            .where(TrackingEvent.tracking_number == tracking_number)
            .order_by(TrackingEvent.event_timestamp.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_pending_email_events(self, limit: int = 100) -> List[TrackingEvent]:
        """Events not yet notified, oldest first."""
        result = await self.db.execute(
            select(TrackingEvent)
            .where(TrackingEvent.email_sent == False)  # noqa: E712
            .order_by(TrackingEvent.created_at.asc(), TrackingEvent.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_email_sent(self, event_id: int) -> None:
        """Idempotent: a second call leaves the first sent-at time alone."""
        await self.db.execute(
            update(TrackingEvent)
            .where(and_(TrackingEvent.id == event_id, TrackingEvent.email_sent == False))  # noqa: E712
            .values(email_sent=True, email_sent_at=datetime.now(timezone.utc))
        )
        await self.db.flush()


class WebhookSubscriptionRepository:
    """Carrier push-notification registrations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(self, subscription: WebhookSubscription) -> WebhookSubscription:
        self.db.add(subscription)
        await self.db.flush()
        return subscription

    async def get_by_id(self, subscription_id: int) -> Optional[WebhookSubscription]:
        return await self.db.get(WebhookSubscription, subscription_id)

    async def get_by_webhook_id(self, carrier_code: str, webhook_id: str) -> Optional[WebhookSubscription]:
        result = await self.db.execute(
            select(WebhookSubscription).where(
                and_(
                    WebhookSubscription.carrier_code == carrier_code,
                    WebhookSubscription.webhook_id == webhook_id,
                )
            )
        )
        return result.scalars().first()

    async def get_account_subscription(self, carrier_code: str, account_number: str) -> Optional[WebhookSubscription]:
        result = await self.db.execute(
            select(WebhookSubscription).where(
                and_(
                    WebhookSubscription.carrier_code == carrier_code,
                    WebhookSubscription.subscription_type == SubscriptionType.ACCOUNT.value,
                    WebhookSubscription.account_number == account_number,
                    WebhookSubscription.status == SubscriptionStatus.ACTIVE.value,
                )
            )
        )
        return result.scalars().first()

    async def get_tracking_subscription(self, carrier_code: str, tracking_number: str) -> Optional[WebhookSubscription]:
        """Existing tracking subscription that still counts (pending or active)."""
        result = await self.db.execute(
            select(WebhookSubscription).where(
                and_(
                    WebhookSubscription.carrier_code == carrier_code,
                    WebhookSubscription.subscription_type == SubscriptionType.TRACKING.value,
                    WebhookSubscription.tracking_number == tracking_number,
                    WebhookSubscription.status.in_([
                        SubscriptionStatus.PENDING.value,
                        SubscriptionStatus.ACTIVE.value,
                    ]),
                )
            )
        )
        return result.scalars().first()

    async def get_active_by_carrier(self, carrier_code: str) -> List[WebhookSubscription]:
        result = await self.db.execute(
            select(WebhookSubscription).where(
                and_(
                    WebhookSubscription.carrier_code == carrier_code,
                    WebhookSubscription.status == SubscriptionStatus.ACTIVE.value,
                )
            )
        )
        return list(result.scalars().all())

    async def deactivate(self, subscription_id: int, error: Optional[str] = None) -> None:
        values = {"status": SubscriptionStatus.INACTIVE.value}
        if error:
            values["error_message"] = error
        await self.db.execute(
            update(WebhookSubscription)
            .where(WebhookSubscription.id == subscription_id)
            .values(**values)
        )
        await self.db.flush()

    async def get_expiring_subscriptions(self, days: int = 7) -> List[WebhookSubscription]:
        """Active subscriptions expiring within `days`."""
        threshold = datetime.now(timezone.utc) + timedelta(days=days)
        result = await self.db.execute(
            select(WebhookSubscription).where(
                and_(
                    WebhookSubscription.status == SubscriptionStatus.ACTIVE.value,
                    WebhookSubscription.expires_at.isnot(None),
                    WebhookSubscription.expires_at <= threshold,
                )
            )
        )
        return list(result.scalars().all())
