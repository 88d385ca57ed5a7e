"""
Multi-Carrier Shipping Service

- Quotes every carrier active for the store, concurrently
- A failing carrier never hides the others; its result carries the error
- Returns combined rates sorted by price

Usage:
    service = MultiCarrierService(CarrierFactory())
    quote = await service.get_all_carrier_rates(request)
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from parcelgate.core.exceptions import ParcelGateError
from parcelgate.models.carrier import CarrierCode, carrier_name
from parcelgate.modules.shipping.base import QuoteResult, Rate
from parcelgate.modules.shipping.carriers import CarrierFactory
from parcelgate.modules.shipping.transit import TransitEstimate
from parcelgate.schemas.shipping import RateRequest

logger = logging.getLogger(__name__)


@dataclass
class MultiCarrierRate:
    """Rate from any carrier with carrier identification and its estimate."""
    rate: Rate
    carrier_name: str
    transit: Optional[TransitEstimate] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.rate.to_dict()
        data["carrier_name"] = self.carrier_name
        data["code"] = f"{self.rate.carrier_code}_{self.rate.method_code}"
        if self.transit is not None:
            data["delivery_days"] = self.transit.business_days
            data["delivery_date"] = self.transit.delivery_date
            data["guaranteed"] = self.transit.guaranteed
        return data


@dataclass
class MultiCarrierQuote:
    rates: List[MultiCarrierRate] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    stale_carriers: List[str] = field(default_factory=list)


class MultiCarrierService:
    """Unified rate lookup across all enabled carriers."""

    def __init__(self, factory: CarrierFactory):
        self.factory = factory

    async def _quote_one(self, code: CarrierCode, request: RateRequest) -> QuoteResult:
        client = self.factory.get_client(code)
        try:
            return await client.quote(request)
        except ParcelGateError as e:
            logger.error(f"Error getting rates from {code.value}: {e.message}")
            return QuoteResult(carrier_code=code.value, error=e.message)

    async def get_all_carrier_rates(
        self,
        request: RateRequest,
        carrier_filter: Optional[CarrierCode] = None,
    ) -> MultiCarrierQuote:
        """
        Get shipping rates from all active carriers.

        Args:
            request: Normalized rate request
            carrier_filter: Optional - only get rates from this carrier

        Returns:
            MultiCarrierQuote with rates sorted by price (lowest first)
        """
        codes = [
            code
            for code in self.factory.get_registered_carriers()
            if self.factory.config_provider.get(code, request.store_id).active
        ]
        if carrier_filter:
            codes = [code for code in codes if code == carrier_filter]

        if not codes:
            logger.warning("No carriers enabled for rate lookup")
            return MultiCarrierQuote()

        results = await asyncio.gather(*(self._quote_one(code, request) for code in codes))

        quote = MultiCarrierQuote()
        for result in results:
            if result.error:
                quote.errors[result.carrier_code] = result.error
            if result.stale:
                quote.stale_carriers.append(result.carrier_code)
            for rate in result.rates:
                quote.rates.append(MultiCarrierRate(
                    rate=rate,
                    carrier_name=carrier_name(rate.carrier_code),
                    transit=result.transit.get(rate.method_code),
                ))
            logger.info(f"Got {len(result.rates)} rates from {result.carrier_code}")

        quote.rates.sort(key=lambda r: r.rate.price)
        return quote
