"""
Store pricing rules applied to carrier rates.

Order matters: allowed-method filter, drop non-positive prices (data-quality
guard, not an error), add the handling fee, then zero the price when the
free-shipping threshold is met. Free shipping therefore means fully free.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, List

from parcelgate.core.config import CarrierConfig
from parcelgate.modules.shipping.base import Rate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CarrierRate:
    """Price as reported by the carrier, before store rules."""
    method_code: str
    title: str
    amount: float


def apply_pricing(
    carrier_rates: Iterable[CarrierRate],
    config: CarrierConfig,
    subtotal: float,
) -> List[Rate]:
    fee = config.handling_fee
    free = config.free_shipping_threshold > 0 and subtotal >= config.free_shipping_threshold

    rates: List[Rate] = []
    for carrier_rate in carrier_rates:
        if not config.is_method_allowed(carrier_rate.method_code):
            continue
        if carrier_rate.amount <= 0:
            if config.debug:
                logger.debug(
                    f"[PRICING] Skipping {config.carrier_code.value} {carrier_rate.method_code} "
                    f"with non-positive price {carrier_rate.amount}"
                )
            continue

        price = carrier_rate.amount + fee
        if free:
            price = 0.0

        rates.append(Rate(
            carrier_code=config.carrier_code.value,
            method_code=carrier_rate.method_code,
            title=carrier_rate.title,
            price=round(price, 2),
            cost=round(max(price - fee, 0.0), 2),
        ))
    return rates
