"""
Tracking webhook subscriptions

Records a pending subscription for every new tracking number of a carrier
whose webhook processing is enabled. Registering the subscription with the
carrier happens outside the core; the sweep job hands back subscriptions
that are about to expire so they can be renewed.
"""
import logging
from typing import List, Optional

from parcelgate.core.config import settings
from parcelgate.core.exceptions import UnknownCarrierError
from parcelgate.models.webhook_subscription import (
    SubscriptionStatus,
    SubscriptionType,
    WebhookSubscription,
)
from parcelgate.services.tracking_repository import WebhookSubscriptionRepository
from parcelgate.services.webhook_processors import ProcessorPool

logger = logging.getLogger(__name__)


def callback_url(carrier_code: str) -> Optional[str]:
    base = settings.WEBHOOK_CALLBACK_BASE_URL.rstrip("/")
    if not base:
        return None
    return f"{base}/webhooks/{carrier_code}"


class SubscriptionService:
    def __init__(self, subscriptions: WebhookSubscriptionRepository, processors: ProcessorPool):
        self.subscriptions = subscriptions
        self.processors = processors

    async def subscribe_tracking(
        self,
        carrier_code: str,
        tracking_number: str,
        track_id: Optional[int] = None,
    ) -> Optional[WebhookSubscription]:
        """
        Create a pending tracking subscription.

        Returns None when the carrier has no enabled processor or a
        subscription already exists for the tracking number.
        """
        try:
            processor = self.processors.get(carrier_code)
        except UnknownCarrierError:
            logger.debug(f"[SUBSCRIPTIONS] No webhook processor for carrier {carrier_code}")
            return None

        if not processor.is_enabled():
            logger.debug(f"[SUBSCRIPTIONS] Webhook processor for carrier {carrier_code} is disabled")
            return None

        existing = await self.subscriptions.get_tracking_subscription(carrier_code, tracking_number)
        if existing is not None:
            logger.debug(f"[SUBSCRIPTIONS] Subscription already exists for {carrier_code} {tracking_number}")
            return None

        subscription = await self.subscriptions.save(WebhookSubscription(
            carrier_code=carrier_code,
            subscription_type=SubscriptionType.TRACKING.value,
            tracking_number=tracking_number,
            track_id=track_id,
            callback_url=callback_url(carrier_code),
            security_token=processor.security_token(),
            status=SubscriptionStatus.PENDING.value,
        ))
        logger.info(f"[SUBSCRIPTIONS] Created webhook subscription for {carrier_code} tracking {tracking_number}")
        return subscription

    async def deactivate(self, subscription_id: int, error: Optional[str] = None) -> None:
        await self.subscriptions.deactivate(subscription_id, error)

    async def sweep_expiring(self, days: int = 7) -> List[WebhookSubscription]:
        """Mark subscriptions expiring within `days` inactive and return them for renewal."""
        expiring = await self.subscriptions.get_expiring_subscriptions(days)
        for subscription in expiring:
            await self.subscriptions.deactivate(subscription.id, "Expiring, renewal required")
        if expiring:
            logger.info(f"[SUBSCRIPTIONS] {len(expiring)} subscriptions expiring within {days} days")
        return expiring
