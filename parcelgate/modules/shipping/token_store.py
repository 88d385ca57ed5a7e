"""
OAuth Token Store

Per-carrier, per-account cache of client-credentials tokens.

A token is cached for max(0, expires_in - buffer) seconds and is never handed
out once now >= issued_at + expires_in - buffer, so a request can't start with
a token that expires mid-flight. Exchanges for the same key are serialized
in-process so a burst of cache misses triggers a single OAuth call.
"""
import asyncio
import enum
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

from parcelgate.core.cache import KeyValueCache
from parcelgate.core.config import settings

logger = logging.getLogger(__name__)


class TokenKind(str, enum.Enum):
    BEARER = "bearer"
    PAYMENT = "payment"  # USPS payment authorization, cached independently


@dataclass(frozen=True)
class TokenScope:
    """Which account a token belongs to."""
    store_id: Optional[int]
    environment: str
    account: str = ""

    @property
    def key(self) -> str:
        store = self.store_id if self.store_id is not None else "default"
        return f"{self.environment}:{store}:{self.account}"


@dataclass(frozen=True)
class TokenGrant:
    """What a carrier OAuth endpoint returned."""
    access_token: str
    expires_in: int


@dataclass(frozen=True)
class AccessToken:
    value: str
    issued_at: float
    ttl_seconds: int
    carrier: str
    environment: str
    scope_key: str
    kind: TokenKind = TokenKind.BEARER

    def refresh_at(self, buffer_seconds: int) -> float:
        return self.issued_at + self.ttl_seconds - buffer_seconds

    def is_usable(self, now: float, buffer_seconds: int) -> bool:
        return now < self.refresh_at(buffer_seconds)


TokenExchange = Callable[[], Awaitable[TokenGrant]]


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class TokenStore:
    """
    Shared token cache used by every carrier client.

    Attributes:
        buffer_seconds: Safety margin subtracted from the reported lifetime
    """

    KEY_PREFIX = "oauth:"

    def __init__(
        self,
        cache: KeyValueCache,
        buffer_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.buffer_seconds = buffer_seconds if buffer_seconds is not None else settings.OAUTH_TOKEN_BUFFER_SECONDS
        self.clock = clock
        self._locks: Dict[str, _KeyLock] = {}

    def _key(self, carrier: str, scope: TokenScope, kind: TokenKind) -> str:
        return f"{self.KEY_PREFIX}{carrier}:{kind.value}:{scope.key}"

    @asynccontextmanager
    async def _exchange_lock(self, key: str) -> AsyncIterator[None]:
        """Serialize exchanges for one key. The entry is dropped once nobody holds or awaits it."""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    async def _cached(self, key: str, buffer_seconds: int) -> Optional[AccessToken]:
        doc = await self.cache.get(key)
        if not doc:
            return None
        token = AccessToken(
            value=doc["value"],
            issued_at=float(doc["issued_at"]),
            ttl_seconds=int(doc["ttl_seconds"]),
            carrier=doc["carrier"],
            environment=doc["environment"],
            scope_key=doc["scope_key"],
            kind=TokenKind(doc.get("kind", TokenKind.BEARER.value)),
        )
        if not token.is_usable(self.clock(), buffer_seconds):
            return None
        return token

    async def get_token(
        self,
        carrier: str,
        scope: TokenScope,
        exchange: TokenExchange,
        kind: TokenKind = TokenKind.BEARER,
        buffer_seconds: Optional[int] = None,
    ) -> str:
        """
        Return a usable token, running `exchange` on a miss.

        Errors raised by the exchange (missing credentials, rejected
        credentials, network failure) propagate unchanged; nothing is cached
        for a failed or cancelled exchange.
        """
        buffer = self.buffer_seconds if buffer_seconds is None else buffer_seconds
        key = self._key(carrier, scope, kind)

        token = await self._cached(key, buffer)
        if token:
            return token.value

        async with self._exchange_lock(key):
            # Another waiter may have refreshed while we queued
            token = await self._cached(key, buffer)
            if token:
                return token.value

            grant = await exchange()
            token = AccessToken(
                value=grant.access_token,
                issued_at=self.clock(),
                ttl_seconds=int(grant.expires_in),
                carrier=carrier,
                environment=scope.environment,
                scope_key=scope.key,
                kind=kind,
            )
            cache_ttl = max(0, token.ttl_seconds - buffer)
            if cache_ttl > 0:
                await self.cache.set(key, {
                    "value": token.value,
                    "issued_at": token.issued_at,
                    "ttl_seconds": token.ttl_seconds,
                    "carrier": carrier,
                    "environment": scope.environment,
                    "scope_key": scope.key,
                    "kind": kind.value,
                }, cache_ttl)
            logger.info(f"[{carrier.upper()} Auth] Obtained {kind.value} token, cached for {cache_ttl}s")
            return token.value

    async def invalidate(self, carrier: str, scope: TokenScope, kind: Optional[TokenKind] = None) -> None:
        """Evict the cached token(s). kind=None evicts every kind for the scope."""
        kinds = [kind] if kind else list(TokenKind)
        for k in kinds:
            await self.cache.delete(self._key(carrier, scope, k))
        logger.info(f"[{carrier.upper()} Auth] Invalidated {'all' if kind is None else kind.value} token(s) for {scope.key}")
