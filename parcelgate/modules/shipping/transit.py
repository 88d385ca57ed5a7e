"""
Transit-time normalization and the checkout transit store.

Every carrier converges on TransitEstimate, whatever the source of its data
(rate response commitments, a secondary time-in-transit API, or a
guaranteed-delivery business-day count). Estimates for a checkout are kept
in TransitTimeStore under an explicit session id and cart id; a different
cart id for the same session makes older estimates invisible.
"""
import asyncio
import enum
import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, Optional, Tuple

from parcelgate.core.cache import KeyValueCache
from parcelgate.core.config import CarrierConfig, settings
from parcelgate.models.carrier import CarrierCode

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


class TransitSource(str, enum.Enum):
    """Where an estimate came from."""
    RATE_RESPONSE = "rate_response"
    TRANSIT_API = "transit_api"
    GUARANTEED_DELIVERY = "guaranteed_delivery"
    NONE = "none"


@dataclass(frozen=True)
class TransitEstimate:
    """Normalized delivery estimate for one carrier method."""
    carrier_code: str
    method_code: str
    business_days: Optional[int] = None
    delivery_date: Optional[str] = None  # Y-m-d
    delivery_day: Optional[str] = None
    delivery_time: Optional[str] = None
    guaranteed: bool = False
    source: TransitSource = TransitSource.NONE
    cutoff_hour: Optional[int] = None
    pickup_days: Tuple[int, ...] = field(default_factory=tuple)
    pickup_hour: Optional[int] = None
    grace_period: int = 0
    grace_period_unit: str = "hours"

    @property
    def key(self) -> str:
        return f"{self.carrier_code}_{self.method_code}"

    @property
    def min_days(self) -> int:
        return self.business_days or 1

    @property
    def max_days(self) -> int:
        return self.business_days or 1

    @property
    def has_data(self) -> bool:
        return self.business_days is not None or self.delivery_date is not None

    def with_schedule(self, config: CarrierConfig) -> "TransitEstimate":
        """Attach the carrier's cutoff/pickup/grace schedule."""
        return replace(
            self,
            cutoff_hour=config.cutoff_hour_for(self.method_code),
            pickup_days=tuple(config.pickup_days),
            pickup_hour=config.pickup_hour,
            grace_period=config.grace_period,
            grace_period_unit=config.grace_period_unit,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        data["pickup_days"] = list(self.pickup_days)
        data["min"] = self.min_days
        data["max"] = self.max_days
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransitEstimate":
        return cls(
            carrier_code=data["carrier_code"],
            method_code=data["method_code"],
            business_days=data.get("business_days"),
            delivery_date=data.get("delivery_date"),
            delivery_day=data.get("delivery_day"),
            delivery_time=data.get("delivery_time"),
            guaranteed=bool(data.get("guaranteed", False)),
            source=TransitSource(data.get("source", TransitSource.NONE.value)),
            cutoff_hour=data.get("cutoff_hour"),
            pickup_days=tuple(data.get("pickup_days") or ()),
            pickup_hour=data.get("pickup_hour"),
            grace_period=int(data.get("grace_period") or 0),
            grace_period_unit=data.get("grace_period_unit") or "hours",
        )


def add_business_days(start: date, business_days: int) -> date:
    """Walk forward from start, counting only Monday-Friday."""
    current = start
    remaining = business_days
    while remaining > 0:
        current += timedelta(days=1)
        if current.weekday() < 5:
            remaining -= 1
    return current


def next_pickup_date(config: CarrierConfig, now: datetime) -> date:
    """First configured pickup day, starting tomorrow once today's cutoff has passed."""
    hour, minute = (int(part) for part in config.cutoff_time.split(":"))
    ship_date = now.date()
    if (now.hour, now.minute) >= (hour, minute):
        ship_date += timedelta(days=1)
    for _ in range(7):
        if ship_date.isoweekday() in config.pickup_days:
            break
        ship_date += timedelta(days=1)
    return ship_date


def next_business_ship_date(cutoff_hour: int, now: datetime) -> date:
    """Label ship date: next weekday after the cutoff hour, never a weekend."""
    ship_date = now.date()
    if now.hour >= cutoff_hour:
        ship_date = add_business_days(ship_date, 1)
    while ship_date.weekday() >= 5:
        ship_date += timedelta(days=1)
    return ship_date


def next_mailing_date(now: datetime) -> date:
    """Weekend mailing dates move to Monday."""
    today = now.date()
    if today.weekday() == 5:
        return today + timedelta(days=2)
    if today.weekday() == 6:
        return today + timedelta(days=1)
    return today


def ensure_all_methods_have_cutoff_data(
    carrier_code: str,
    method_codes: Iterable[str],
    transit: Dict[str, TransitEstimate],
) -> Dict[str, TransitEstimate]:
    """
    Return a transit map with an entry for every method.

    Methods without data get a degenerate estimate (business_days=None,
    guaranteed=False) so callers never hit a lookup miss.
    """
    completed = dict(transit)
    for method_code in method_codes:
        if method_code not in completed:
            completed[method_code] = TransitEstimate(carrier_code=carrier_code, method_code=method_code)
    return completed


@dataclass(frozen=True)
class TransitSession:
    """Explicit checkout scope for stored estimates."""
    session_id: str
    cart_id: Optional[str] = None


class TransitTimeStore:
    """
    Short-lived estimates per checkout session, keyed by carrier and method.

    One cache document per (session, carrier). A whole carrier document is
    replaced on save_for_carrier; single-method saves are serialized per key
    within the process.
    """

    KEY_PREFIX = "transit:"

    def __init__(self, cache: KeyValueCache, ttl_seconds: Optional[int] = None):
        self.cache = cache
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.TRANSIT_SESSION_TTL_SECONDS
        self._locks: Dict[str, asyncio.Lock] = {}

    def _key(self, session: TransitSession, carrier_code: str) -> str:
        return f"{self.KEY_PREFIX}{session.session_id}:{carrier_code}"

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _load(self, session: TransitSession, carrier_code: str) -> Dict[str, TransitEstimate]:
        key = self._key(session, carrier_code)
        doc = await self.cache.get(key)
        if not doc:
            return {}
        if doc.get("cart_id") != session.cart_id:
            logger.debug(f"[TRANSIT] Cart changed for session {session.session_id}, dropping {carrier_code} estimates")
            await self.cache.delete(key)
            return {}
        return {
            method: TransitEstimate.from_dict(data)
            for method, data in (doc.get("methods") or {}).items()
        }

    async def _write(
        self,
        session: TransitSession,
        carrier_code: str,
        estimates: Dict[str, TransitEstimate],
    ) -> None:
        doc = {
            "cart_id": session.cart_id,
            "methods": {method: est.to_dict() for method, est in estimates.items()},
        }
        await self.cache.set(self._key(session, carrier_code), doc, self.ttl_seconds)

    async def save(self, session: TransitSession, estimate: TransitEstimate) -> None:
        """Store or replace one method's estimate."""
        key = self._key(session, estimate.carrier_code)
        async with self._lock(key):
            current = await self._load(session, estimate.carrier_code)
            current[estimate.method_code] = estimate
            await self._write(session, estimate.carrier_code, current)

    async def save_for_carrier(
        self,
        session: TransitSession,
        carrier_code: str,
        estimates: Dict[str, TransitEstimate],
    ) -> None:
        """Replace all estimates of a carrier with the latest quote's estimates."""
        key = self._key(session, carrier_code)
        async with self._lock(key):
            await self._write(session, carrier_code, estimates)
        logger.debug(f"[TRANSIT] Saved {len(estimates)} {carrier_code} estimates for session {session.session_id}")

    async def get_by_carrier_method(
        self,
        session: TransitSession,
        carrier_code: str,
        method_code: str,
    ) -> Optional[TransitEstimate]:
        return (await self._load(session, carrier_code)).get(method_code)

    async def get_by_carrier(self, session: TransitSession, carrier_code: str) -> Dict[str, TransitEstimate]:
        return await self._load(session, carrier_code)

    async def get_all(self, session: TransitSession) -> Dict[str, TransitEstimate]:
        """All estimates of the session keyed by 'carrier_method'."""
        result: Dict[str, TransitEstimate] = {}
        for carrier in CarrierCode:
            for estimate in (await self._load(session, carrier.value)).values():
                result[estimate.key] = estimate
        return result

    async def clear_carrier(self, session: TransitSession, carrier_code: str) -> None:
        await self.cache.delete(self._key(session, carrier_code))

    async def clear_all(self, session: TransitSession) -> None:
        await self.cache.delete_prefix(f"{self.KEY_PREFIX}{session.session_id}:")
