"""
Rate Quote Service

Quote orchestration shared by the carrier clients:
availability checks -> fresh cache -> carrier call -> cache write + transit
store, and on carrier failure -> stale cache -> "carrier unavailable".

A quote never raises for carrier trouble; the caller always gets a
QuoteResult. A price is never invented.
"""
import logging
import time
from typing import Awaitable, Callable, Dict, Optional

from parcelgate.core.cache import KeyValueCache, get_cache
from parcelgate.core.config import CarrierConfig
from parcelgate.core.exceptions import ParcelGateError
from parcelgate.modules.shipping.base import QuoteResult, RateQuoteBundle
from parcelgate.modules.shipping.rate_cache import RateQuoteCache
from parcelgate.modules.shipping.transit import (
    TransitEstimate,
    TransitSession,
    TransitTimeStore,
    ensure_all_methods_have_cutoff_data,
)
from parcelgate.schemas.shipping import RateRequest

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Unable to retrieve shipping rates"

RateFetcher = Callable[[CarrierConfig, RateRequest], Awaitable[QuoteResult]]


def check_availability(config: CarrierConfig, request: RateRequest) -> Optional[QuoteResult]:
    """
    Gate a quote on carrier configuration and package/destination limits.

    Returns:
        None when the carrier may be quoted, else the result to return
        as-is (empty, or an error result when the store shows
        non-applicable methods).
    """
    carrier = config.carrier_code.value
    if not config.active:
        return QuoteResult(carrier_code=carrier)

    if not config.has_credentials:
        logger.warning(f"[{carrier.upper()}] API credentials not configured")
        return QuoteResult(carrier_code=carrier)

    reason = None
    if config.max_weight and request.weight > config.max_weight:
        reason = f"Package weight exceeds {config.title or carrier.upper()} limit"
    elif not request.dest_country or not config.ships_to(request.dest_country):
        reason = f"{config.title or carrier.upper()} does not ship to {request.dest_country or 'this destination'}"

    if reason:
        if config.debug:
            logger.debug(f"[{carrier.upper()}] Not applicable: {reason}")
        if config.show_method_if_not_applicable:
            return QuoteResult(carrier_code=carrier, error=config.error_message or reason)
        return QuoteResult(carrier_code=carrier)

    return None


class RateQuoteService:
    """
    Cached quoting on top of a carrier's uncached rate fetch.

    Attributes:
        cache: Backing store for rate bundles
        transit_store: Session store for delivery estimates (optional)
    """

    def __init__(
        self,
        cache: Optional[KeyValueCache] = None,
        transit_store: Optional[TransitTimeStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache or get_cache()
        self.transit_store = transit_store
        self.clock = clock

    def rate_cache(self, config: CarrierConfig) -> RateQuoteCache:
        return RateQuoteCache(self.cache, config.carrier_code.value, config.cache_ttl, clock=self.clock)

    async def quote(self, config: CarrierConfig, request: RateRequest, fetch: RateFetcher) -> QuoteResult:
        carrier = config.carrier_code.value

        unavailable = check_availability(config, request)
        if unavailable is not None:
            return unavailable

        request = request.with_origin(config.shipper)
        rate_cache = self.rate_cache(config)
        fingerprint = rate_cache.key(request)

        if config.cache_enabled:
            bundle, fresh = await rate_cache.load(fingerprint)
            if bundle is not None and fresh and bundle.rates:
                logger.info(f"[{carrier.upper()}] Serving {len(bundle.rates)} cached rates")
                await self._store_transit(request, carrier, bundle.transit)
                return QuoteResult(
                    carrier_code=carrier,
                    rates=list(bundle.rates),
                    transit=dict(bundle.transit),
                    from_cache=True,
                )

        try:
            result = await fetch(config, request)
        except ParcelGateError as e:
            logger.error(f"[{carrier.upper()}] Rating API error ({e.code}): {e.message}")
            return await self._fallback(config, request, rate_cache, fingerprint)

        if result.has_valid_rates:
            result.transit = self._complete_transit(config, result)
            if config.cache_enabled:
                await rate_cache.save(fingerprint, RateQuoteBundle(
                    carrier_code=carrier,
                    rates=result.rates,
                    transit=result.transit,
                    timestamp=self.clock(),
                ))
            await self._store_transit(request, carrier, result.transit)

        return result

    def _complete_transit(self, config: CarrierConfig, result: QuoteResult) -> Dict[str, TransitEstimate]:
        completed = ensure_all_methods_have_cutoff_data(
            config.carrier_code.value,
            [rate.method_code for rate in result.rates],
            result.transit,
        )
        return {method: estimate.with_schedule(config) for method, estimate in completed.items()}

    async def _fallback(
        self,
        config: CarrierConfig,
        request: RateRequest,
        rate_cache: RateQuoteCache,
        fingerprint: str,
    ) -> QuoteResult:
        carrier = config.carrier_code.value
        if config.cache_enabled and config.cache_fallback_enabled:
            bundle = await rate_cache.load_stale(fingerprint)
            if bundle is not None and bundle.rates:
                logger.warning(f"[{carrier.upper()}] Carrier unavailable, serving stale rates")
                await self._store_transit(request, carrier, bundle.transit)
                return QuoteResult(
                    carrier_code=carrier,
                    rates=list(bundle.rates),
                    transit=dict(bundle.transit),
                    from_cache=True,
                    stale=True,
                )
        return QuoteResult(carrier_code=carrier, error=config.error_message or UNAVAILABLE_MESSAGE)

    async def _store_transit(
        self,
        request: RateRequest,
        carrier: str,
        transit: Dict[str, TransitEstimate],
    ) -> None:
        if self.transit_store is None or not request.session_id or not transit:
            return
        session = TransitSession(session_id=request.session_id, cart_id=request.cart_id)
        await self.transit_store.save_for_carrier(session, carrier, transit)
