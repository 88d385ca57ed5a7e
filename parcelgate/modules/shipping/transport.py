"""
Authenticated carrier transport.

Wraps a lazily created httpx.AsyncClient and the TokenStore. A 401/403
evicts the bearer token only; a USPS payment token survives it. Idempotent
calls (rating, transit, tracking) are retried exactly once with a fresh
token, label calls never are.
"""
import logging
from typing import Any, Callable, Dict, Optional

import httpx

from parcelgate.modules.shipping.http import DEFAULT_TIMEOUT, transport_error
from parcelgate.modules.shipping.token_store import TokenExchange, TokenKind, TokenScope, TokenStore

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = (401, 403)


class CarrierTransport:
    """HTTP access for one carrier client."""

    def __init__(
        self,
        carrier_code: str,
        token_store: TokenStore,
        timeout: float = DEFAULT_TIMEOUT,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.carrier_code = carrier_code
        self.token_store = token_store
        self.timeout = timeout
        self._http_transport = http_transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._http_transport,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def request(
        self,
        method: str,
        url: str,
        scope: TokenScope,
        exchange: TokenExchange,
        headers: Optional[Callable[[str], Dict[str, str]]] = None,
        retry_on_auth: bool = True,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a bearer-authenticated request.

        Args:
            headers: Builds the request headers from the bearer token
            retry_on_auth: One retry with a new token after 401/403

        Returns:
            The final response, whatever its status. Token is evicted if
            that response is still 401/403.
        """
        client = await self.get_http_client()
        attempts = 2 if retry_on_auth else 1

        response: Optional[httpx.Response] = None
        for attempt in range(attempts):
            token = await self.token_store.get_token(self.carrier_code, scope, exchange)
            request_headers = headers(token) if headers else {"Authorization": f"Bearer {token}"}
            try:
                response = await client.request(
                    method,
                    url,
                    headers=request_headers,
                    timeout=timeout or self.timeout,
                    **kwargs,
                )
            except httpx.HTTPError as e:
                raise transport_error(e, self.carrier_code)

            logger.debug(f"[{self.carrier_code.upper()}] {method} {url} -> {response.status_code}")

            if response.status_code not in AUTH_FAILURE_STATUSES:
                return response

            await self.token_store.invalidate(self.carrier_code, scope, TokenKind.BEARER)
            if attempt + 1 < attempts:
                logger.warning(
                    f"[{self.carrier_code.upper()}] {response.status_code} from {url}, retrying once with a new token"
                )

        return response
