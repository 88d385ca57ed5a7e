"""
Label Service

Creates and voids labels for host orders. The carrier comes from the
order's shipping method ("<carrier>_<method>"). Label calls are never
retried; failures come back as ShipmentResult with the carrier's text.
"""
import logging
from typing import Optional

from parcelgate.core.exceptions import ParcelGateError, ValidationError
from parcelgate.models.carrier import CarrierCode, tracking_url
from parcelgate.modules.shipping.base import ShipmentResult
from parcelgate.modules.shipping.carriers import CarrierFactory
from parcelgate.schemas.shipping import PackageOverrides, ShipmentOrder
from parcelgate.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


class LabelService:
    """
    Label creation across carriers.

    Args:
        factory: Carrier client factory
        subscriptions: When given, a tracking subscription is registered
            for every new tracking number
    """

    def __init__(self, factory: CarrierFactory, subscriptions: Optional[SubscriptionService] = None):
        self.factory = factory
        self.subscriptions = subscriptions

    def is_label_available(self, carrier_code: CarrierCode, store_id: Optional[int] = None) -> bool:
        config = self.factory.config_provider.get(carrier_code, store_id)
        if not (config.active and config.has_credentials):
            return False
        if carrier_code == CarrierCode.USPS:
            return config.has_label_credentials
        return True

    async def create_label(
        self,
        order: ShipmentOrder,
        overrides: Optional[PackageOverrides] = None,
        track_id: Optional[int] = None,
    ) -> ShipmentResult:
        try:
            carrier_code = order.carrier_code
        except ValueError:
            raise ValidationError(
                f"Unsupported shipping method: {order.shipping_method}",
                details={"order": order.increment_id},
            )

        if not self.is_label_available(carrier_code, order.store_id):
            return ShipmentResult(
                success=False,
                carrier_code=carrier_code.value,
                error_message="Label generation is not available for this order's shipping carrier.",
            )

        client = self.factory.get_client(carrier_code)
        try:
            label = await client.create_label(order, overrides)
        except ParcelGateError as e:
            logger.error(f"[LABEL] Create label failed for order {order.increment_id}: {e.message}")
            return ShipmentResult(success=False, carrier_code=carrier_code.value, error_message=e.message)

        if self.subscriptions is not None:
            await self.subscriptions.subscribe_tracking(carrier_code.value, label.tracking_number, track_id)

        return ShipmentResult(
            success=True,
            carrier_code=carrier_code.value,
            tracking_number=label.tracking_number,
            tracking_url=tracking_url(carrier_code.value, label.tracking_number),
            label=label,
        )

    async def void_label(
        self,
        carrier_code: CarrierCode,
        identifier: str,
        store_id: Optional[int] = None,
    ) -> ShipmentResult:
        """Void by tracking number, or by shipment id for UPS."""
        client = self.factory.get_client(carrier_code)
        try:
            await client.void_label(identifier, store_id)
        except ParcelGateError as e:
            logger.error(f"[LABEL] Void failed for {carrier_code.value} {identifier}: {e.message}")
            return ShipmentResult(success=False, carrier_code=carrier_code.value, error_message=e.message)
        return ShipmentResult(success=True, carrier_code=carrier_code.value, tracking_number=identifier)
