"""
Tracking Jobs

Recovery and maintenance for webhook tracking: retries customer
notifications left unsent and flags subscriptions that are about to expire.

The worker needs a TrackLookup in ctx["track_lookup"] (set by the host's
worker startup hook). Without one, pending notifications stay pending.
"""
import logging

from parcelgate.core.database import get_db_session
from parcelgate.services.email_provider import close_sender, default_sender
from parcelgate.services.notification_service import NotificationDispatcher
from parcelgate.services.subscription_service import SubscriptionService
from parcelgate.services.tracking_repository import (
    TrackingEventRepository,
    WebhookSubscriptionRepository,
)
from parcelgate.services.webhook_processors import ProcessorPool

logger = logging.getLogger(__name__)

PENDING_BATCH_SIZE = 100
EXPIRY_WINDOW_DAYS = 7


async def startup(ctx: dict) -> None:
    """Build the worker's sender once, unless the host already put one in ctx."""
    if ctx.get("sender") is None:
        ctx["sender"] = default_sender()
        ctx["owns_sender"] = True


async def shutdown(ctx: dict) -> None:
    if ctx.pop("owns_sender", False):
        await close_sender(ctx.pop("sender", None))


async def process_pending_notifications(ctx: dict) -> dict:
    """Retry tracking notifications not yet marked sent, oldest first."""
    track_lookup = ctx.get("track_lookup")
    if track_lookup is None:
        logger.warning("[NOTIFY] No track lookup registered with the worker, skipping pending notifications")
        return {"status": "skipped", "reason": "no_track_lookup"}

    if ctx.get("sender") is None:
        await startup(ctx)
    sender = ctx["sender"]

    async with get_db_session() as db:
        dispatcher = NotificationDispatcher(
            events=TrackingEventRepository(db),
            sender=sender,
            track_lookup=track_lookup,
        )
        processed = await dispatcher.process_pending(limit=PENDING_BATCH_SIZE)

    if processed:
        logger.info(f"[NOTIFY] Processed {processed} pending tracking notifications")
    return {"status": "ok", "processed": processed}


async def sweep_expiring_subscriptions(ctx: dict) -> dict:
    """Deactivate subscriptions expiring within a week so the host can renew them."""
    async with get_db_session() as db:
        service = SubscriptionService(
            WebhookSubscriptionRepository(db),
            ProcessorPool.default(),
        )
        expiring = await service.sweep_expiring(days=EXPIRY_WINDOW_DAYS)

    return {
        "status": "ok",
        "expiring": [
            {
                "id": s.id,
                "carrier_code": s.carrier_code,
                "tracking_number": s.tracking_number,
                "webhook_id": s.webhook_id,
            }
            for s in expiring
        ],
    }
