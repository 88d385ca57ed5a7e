"""
Carrier Client Contract

One contract, three independent implementations (UPS, FedEx, USPS). There
is no shared base class: common behavior lives in composed helpers
(TokenStore, RateQuoteCache, TransitTimeStore, pricing and postcode
helpers). This module holds the contract and the carrier-agnostic values
that cross it.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Protocol, TypeVar, Union, runtime_checkable

from parcelgate.modules.shipping.transit import TransitEstimate
from parcelgate.schemas.shipping import PackageOverrides, RateRequest, ShipmentOrder


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================

@dataclass(frozen=True)
class Rate:
    """Normalized shipping rate."""
    carrier_code: str
    method_code: str
    title: str
    price: float
    cost: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carrier_code": self.carrier_code,
            "method_code": self.method_code,
            "title": self.title,
            "price": self.price,
            "cost": self.cost,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rate":
        return cls(
            carrier_code=data["carrier_code"],
            method_code=data["method_code"],
            title=data["title"],
            price=float(data["price"]),
            cost=float(data["cost"]),
        )


@dataclass(frozen=True)
class RateQuoteBundle:
    """Rates and transit estimates from one carrier call, as cached."""
    carrier_code: str
    rates: List[Rate]
    transit: Dict[str, TransitEstimate]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carrier_code": self.carrier_code,
            "rates": [rate.to_dict() for rate in self.rates],
            "transit": {method: est.to_dict() for method, est in self.transit.items()},
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateQuoteBundle":
        return cls(
            carrier_code=data["carrier_code"],
            rates=[Rate.from_dict(r) for r in data.get("rates", [])],
            transit={m: TransitEstimate.from_dict(t) for m, t in (data.get("transit") or {}).items()},
            timestamp=float(data["timestamp"]),
        )


@dataclass
class QuoteResult:
    """
    Outcome of a quote for one carrier.

    An empty rate list with no error is a valid "no service" answer. `error`
    is set when the carrier is unavailable or not applicable and the store
    asked to show that to the customer.
    """
    carrier_code: str
    rates: List[Rate] = field(default_factory=list)
    transit: Dict[str, TransitEstimate] = field(default_factory=dict)
    error: Optional[str] = None
    from_cache: bool = False
    stale: bool = False

    @property
    def has_valid_rates(self) -> bool:
        return any(rate.price >= 0 for rate in self.rates)


@dataclass
class Label:
    """Label created by a carrier."""
    carrier_code: str
    tracking_number: str
    label_bytes: bytes
    label_format: str
    service_code: Optional[str] = None
    postage: Optional[float] = None
    zone: Optional[str] = None
    weight: Optional[float] = None
    shipment_id: Optional[str] = None  # UPS void uses the shipment id
    raw_response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ShipmentResult:
    """Result handed back to the host after a label attempt."""
    success: bool
    carrier_code: str
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    label: Optional[Label] = None
    error_message: Optional[str] = None


# =============================================================================
# Best-effort results for optional enrichment calls
# =============================================================================

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Ignored:
    """An optional call failed or was skipped; the primary flow is unaffected."""
    reason: str


BestEffort = Union[Ok[T], Ignored]


# =============================================================================
# Contract
# =============================================================================

@runtime_checkable
class CarrierClient(Protocol):
    """Operations every carrier integration provides."""

    carrier_code: str

    async def fetch_rates(self, request: RateRequest) -> QuoteResult:
        """
        Call the carrier rating API (no cache involved).

        Args:
            request: Normalized rate request with origin filled in

        Returns:
            QuoteResult with priced rates and whatever transit data the
            carrier supplied. Retries once on 401/403 with a fresh token.

        Raises:
            ConfigurationError, AuthenticationError, TransientCarrierError,
            CarrierRequestError, StructuralParseError
        """
        ...

    async def quote(self, request: RateRequest) -> QuoteResult:
        """Cached quote: fresh cache, then carrier, then stale fallback."""
        ...

    async def create_label(
        self,
        order: ShipmentOrder,
        overrides: Optional[PackageOverrides] = None,
    ) -> Label:
        """
        Create a shipping label. Never retried automatically.

        Raises:
            AuthenticationError on 401/403 (token invalidated first),
            StructuralParseError when tracking number or label is missing.
        """
        ...

    async def void_label(self, identifier: str, store_id: Optional[int] = None) -> None:
        """Void a label by tracking number (or UPS shipment id)."""
        ...

    async def close(self) -> None:
        ...
