"""
Carrier Registry and Factory

- CarrierFactory builds one client per carrier code and keeps it for reuse
- All clients built by one factory share a TokenStore and a RateQuoteService
- This package is the only place that imports the concrete clients
"""
from typing import Callable, Dict, List, Optional, Type
import logging

import httpx

from parcelgate.core.cache import KeyValueCache, get_cache
from parcelgate.core.config import CarrierConfigProvider, SettingsCarrierConfigProvider
from parcelgate.models.carrier import CarrierCode
from parcelgate.modules.shipping.base import CarrierClient
from parcelgate.modules.shipping.carriers.fedex import FedExClient
from parcelgate.modules.shipping.carriers.ups import UPSClient
from parcelgate.modules.shipping.carriers.usps import USPSClient
from parcelgate.modules.shipping.token_store import TokenStore
from parcelgate.modules.shipping.transit import TransitTimeStore
from parcelgate.services.rate_service import RateQuoteService

logger = logging.getLogger(__name__)

_CARRIER_REGISTRY: Dict[CarrierCode, Type] = {
    CarrierCode.UPS: UPSClient,
    CarrierCode.FEDEX: FedExClient,
    CarrierCode.USPS: USPSClient,
}


class CarrierFactory:
    """
    Builds carrier clients over shared stores.

    Args:
        config_provider: Per-store carrier configuration
        cache: Backing store for tokens, rate bundles and transit estimates
        http_transport: Optional httpx transport (tests use MockTransport)
    """

    def __init__(
        self,
        config_provider: Optional[CarrierConfigProvider] = None,
        cache: Optional[KeyValueCache] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Optional[Callable] = None,
    ):
        self.config_provider = config_provider or SettingsCarrierConfigProvider()
        self.cache = cache or get_cache()
        self.token_store = TokenStore(self.cache)
        self.transit_store = TransitTimeStore(self.cache)
        self.quote_service = RateQuoteService(self.cache, transit_store=self.transit_store)
        self.http_transport = http_transport
        self.now = now
        self._clients: Dict[CarrierCode, CarrierClient] = {}

    def get_client(self, carrier_code: CarrierCode) -> CarrierClient:
        """Client for a carrier, created on first use."""
        client = self._clients.get(carrier_code)
        if client is None:
            client_cls = _CARRIER_REGISTRY[carrier_code]
            client = client_cls(
                config_provider=self.config_provider,
                token_store=self.token_store,
                quote_service=self.quote_service,
                http_transport=self.http_transport,
                now=self.now,
            )
            self._clients[carrier_code] = client
            logger.debug(f"Created carrier client: {carrier_code.value} -> {client_cls.__name__}")
        return client

    def get_active_clients(self, store_id: Optional[int] = None) -> List[CarrierClient]:
        """Clients of every carrier marked active for the store."""
        return [
            self.get_client(code)
            for code in _CARRIER_REGISTRY
            if self.config_provider.get(code, store_id).active
        ]

    @staticmethod
    def get_registered_carriers() -> List[CarrierCode]:
        return list(_CARRIER_REGISTRY.keys())

    async def close(self):
        for client in self._clients.values():
            await client.close()
        self._clients.clear()


__all__ = [
    "CarrierFactory",
    "FedExClient",
    "UPSClient",
    "USPSClient",
]
