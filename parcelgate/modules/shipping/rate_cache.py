"""
Rate Quote Cache

Fingerprints a rate request and stores quote + transit bundles.

Lifecycle of an entry saved at T with ttl:
- fresh while age <= ttl (served without calling the carrier)
- stale while ttl < age <= 2*ttl (served only when the carrier call fails,
  with every title suffixed " (cached)")
- gone after 2*ttl (the store is asked to keep it exactly that long, and the
  age check enforces the same bound whatever the store does)
"""
import hashlib
import json
import logging
import time
from dataclasses import replace
from typing import Callable, Optional, Tuple

from parcelgate.core.cache import KeyValueCache
from parcelgate.modules.shipping.base import RateQuoteBundle
from parcelgate.modules.shipping.postcode import normalize_postcode
from parcelgate.schemas.shipping import RateRequest

logger = logging.getLogger(__name__)

CACHED_SUFFIX = " (cached)"


def annotate_cached(bundle: RateQuoteBundle) -> RateQuoteBundle:
    """Suffix every rate title with " (cached)" exactly once."""
    rates = [
        rate if rate.title.endswith(CACHED_SUFFIX.strip()) else replace(rate, title=f"{rate.title}{CACHED_SUFFIX}")
        for rate in bundle.rates
    ]
    return replace(bundle, rates=rates)


class RateQuoteCache:
    """
    Per-carrier rate cache with a stale-fallback window.

    Attributes:
        carrier_code: Namespace of the entries
        ttl_seconds: Freshness window; entries are retained for twice as long
    """

    KEY_PREFIX = "rates:"

    def __init__(
        self,
        cache: KeyValueCache,
        carrier_code: str,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.carrier_code = carrier_code
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def key(self, request: RateRequest) -> str:
        """
        Deterministic fingerprint of the fields that change a quote.

        Weight is bucketed to 0.1 lb and the destination postcode normalized
        per country so equivalent requests collide.
        """
        fields = {
            "orig_country": request.origin_country,
            "orig_postcode": request.origin_postcode,
            "dest_country": request.dest_country,
            "dest_postcode": normalize_postcode(request.dest_postcode, request.dest_country),
            "dest_region": request.dest_region,
            "weight": round(request.weight, 1),
            "store_id": request.store_id,
            "residential": request.is_residential,
        }
        digest = hashlib.sha256(json.dumps(fields, sort_keys=True).encode()).hexdigest()
        return f"{self.carrier_code}:{digest}"

    def _storage_key(self, fingerprint: str) -> str:
        return f"{self.KEY_PREFIX}{fingerprint}"

    async def _read(self, fingerprint: str) -> Tuple[Optional[RateQuoteBundle], float]:
        doc = await self.cache.get(self._storage_key(fingerprint))
        if not doc:
            return None, 0.0
        try:
            bundle = RateQuoteBundle.from_dict(doc)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[RATE_CACHE] Discarding malformed entry {fingerprint}: {e}")
            await self.cache.delete(self._storage_key(fingerprint))
            return None, 0.0
        return bundle, self.clock() - bundle.timestamp

    async def load(self, fingerprint: str) -> Tuple[Optional[RateQuoteBundle], bool]:
        """
        Returns:
            (bundle, True) when fresh, (bundle, False) when stale but retained,
            (None, False) when missing or past the retention window.
        """
        bundle, age = await self._read(fingerprint)
        if bundle is None or age > 2 * self.ttl_seconds:
            return None, False
        fresh = age <= self.ttl_seconds
        logger.debug(f"[RATE_CACHE] {'Hit' if fresh else 'Stale'}: {fingerprint} (age {age:.0f}s)")
        return bundle, fresh

    async def load_stale(self, fingerprint: str) -> Optional[RateQuoteBundle]:
        """Retained entry (fresh or stale) with titles annotated, for fallback."""
        bundle, age = await self._read(fingerprint)
        if bundle is None or age > 2 * self.ttl_seconds:
            return None
        logger.info(f"[RATE_CACHE] Serving stale {self.carrier_code} rates (age {age:.0f}s)")
        return annotate_cached(bundle)

    async def save(self, fingerprint: str, bundle: RateQuoteBundle) -> None:
        if self.ttl_seconds <= 0:
            return
        bundle = replace(bundle, timestamp=self.clock())
        await self.cache.set(self._storage_key(fingerprint), bundle.to_dict(), 2 * self.ttl_seconds)
        logger.debug(f"[RATE_CACHE] Stored {len(bundle.rates)} rates: {fingerprint}")

    async def invalidate_all(self) -> int:
        """Drop every cached quote of this carrier."""
        removed = await self.cache.delete_prefix(f"{self.KEY_PREFIX}{self.carrier_code}:")
        logger.info(f"[RATE_CACHE] Cleared {removed} {self.carrier_code} entries")
        return removed
