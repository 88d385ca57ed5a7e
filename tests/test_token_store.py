"""
Tests for the OAuth token store and carrier token exchanges.
"""
import asyncio
import json

import httpx
import pytest

from parcelgate.core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    StructuralParseError,
    TransientCarrierError,
)
from parcelgate.models.carrier import CarrierCode
from parcelgate.modules.shipping.oauth import (
    oauth_error_message,
    request_fedex_token,
    request_ups_token,
    request_usps_payment_token,
    request_usps_token,
)
from parcelgate.modules.shipping.token_store import (
    TokenGrant,
    TokenKind,
    TokenScope,
    TokenStore,
)

from tests.conftest import make_config

SCOPE = TokenScope(store_id=1, environment="sandbox", account="A1B2C3")


class CountingExchange:
    """Token exchange that hands out tok-1, tok-2, ..."""

    def __init__(self, expires_in: int = 3600, delay: float = 0.0):
        self.calls = 0
        self.expires_in = expires_in
        self.delay = delay

    async def __call__(self) -> TokenGrant:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return TokenGrant(access_token=f"tok-{self.calls}", expires_in=self.expires_in)


class TestTokenStore:
    """Test token caching and refresh."""

    @pytest.fixture
    def store(self, cache, clock):
        return TokenStore(cache, buffer_seconds=100, clock=clock)

    @pytest.mark.asyncio
    async def test_second_call_uses_cached_token(self, store):
        """Test that a cached token is reused without a new exchange."""
        exchange = CountingExchange()

        first = await store.get_token("ups", SCOPE, exchange)
        second = await store.get_token("ups", SCOPE, exchange)

        assert first == second == "tok-1"
        assert exchange.calls == 1

    @pytest.mark.asyncio
    async def test_refresh_at_buffer_boundary(self, store, clock):
        """Token is served until issued_at + ttl - buffer, then refreshed."""
        exchange = CountingExchange(expires_in=3600)
        await store.get_token("ups", SCOPE, exchange)

        clock.advance(3499)
        assert await store.get_token("ups", SCOPE, exchange) == "tok-1"

        clock.advance(1)
        assert await store.get_token("ups", SCOPE, exchange) == "tok-2"
        assert exchange.calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_misses_exchange_once(self, store):
        """Test that a burst of misses for one key triggers a single exchange."""
        exchange = CountingExchange(delay=0.01)

        tokens = await asyncio.gather(*[store.get_token("fedex", SCOPE, exchange) for _ in range(10)])

        assert set(tokens) == {"tok-1"}
        assert exchange.calls == 1

    @pytest.mark.asyncio
    async def test_exchange_locks_released(self, store):
        """Locks exist only while an exchange is running or awaited."""
        exchange = CountingExchange(delay=0.01)
        scopes = [TokenScope(store_id=i, environment="sandbox", account=f"A{i}") for i in range(5)]

        await asyncio.gather(*[store.get_token("ups", scope, exchange) for scope in scopes for _ in range(3)])

        assert exchange.calls == 5
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_failed_exchange_releases_lock(self, store):
        async def failing():
            raise AuthenticationError("invalid_client", carrier_code="ups")

        with pytest.raises(AuthenticationError):
            await store.get_token("ups", SCOPE, failing)

        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_scopes_are_isolated(self, store):
        """Different accounts never share a token."""
        exchange = CountingExchange()
        other = TokenScope(store_id=2, environment="sandbox", account="Z9")

        assert await store.get_token("ups", SCOPE, exchange) == "tok-1"
        assert await store.get_token("ups", other, exchange) == "tok-2"
        assert await store.get_token("fedex", SCOPE, exchange) == "tok-3"

    @pytest.mark.asyncio
    async def test_failed_exchange_not_cached(self, store):
        """Test that an exchange error propagates and leaves nothing behind."""
        async def failing():
            raise AuthenticationError("invalid_client", carrier_code="ups")

        with pytest.raises(AuthenticationError):
            await store.get_token("ups", SCOPE, failing)

        exchange = CountingExchange()
        assert await store.get_token("ups", SCOPE, exchange) == "tok-1"
        assert exchange.calls == 1

    @pytest.mark.asyncio
    async def test_lifetime_within_buffer_not_cached(self, store):
        """A grant shorter than the buffer is used once but never cached."""
        exchange = CountingExchange(expires_in=60)

        assert await store.get_token("usps", SCOPE, exchange) == "tok-1"
        assert await store.get_token("usps", SCOPE, exchange) == "tok-2"

    @pytest.mark.asyncio
    async def test_invalidate_evicts_all_kinds(self, store):
        """Test that invalidate without a kind drops bearer and payment tokens."""
        bearer = CountingExchange()
        payment = CountingExchange()
        await store.get_token("usps", SCOPE, bearer)
        await store.get_token("usps", SCOPE, payment, kind=TokenKind.PAYMENT, buffer_seconds=0)

        await store.invalidate("usps", SCOPE)

        await store.get_token("usps", SCOPE, bearer)
        await store.get_token("usps", SCOPE, payment, kind=TokenKind.PAYMENT, buffer_seconds=0)
        assert bearer.calls == 2
        assert payment.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_single_kind(self, store):
        bearer = CountingExchange()
        payment = CountingExchange()
        await store.get_token("usps", SCOPE, bearer)
        await store.get_token("usps", SCOPE, payment, kind=TokenKind.PAYMENT)

        await store.invalidate("usps", SCOPE, TokenKind.PAYMENT)

        await store.get_token("usps", SCOPE, bearer)
        await store.get_token("usps", SCOPE, payment, kind=TokenKind.PAYMENT)
        assert bearer.calls == 1
        assert payment.calls == 2


def _oauth_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestOAuthExchanges:
    """Test carrier client-credentials exchanges."""

    @pytest.mark.asyncio
    async def test_ups_uses_basic_auth(self):
        """Test UPS sends Basic credentials and a form grant."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = request.content.decode()
            return httpx.Response(200, json={"access_token": "ups-token", "expires_in": "14399"})

        async with _oauth_client(handler) as http:
            grant = await request_ups_token(http, make_config(CarrierCode.UPS), "https://ups.test/oauth")

        assert grant == TokenGrant(access_token="ups-token", expires_in=14399)
        assert seen["auth"].startswith("Basic ")
        assert seen["body"] == "grant_type=client_credentials"

    @pytest.mark.asyncio
    async def test_fedex_sends_credentials_in_form(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = request.content.decode()
            assert "client_id=fedex-client" in body
            assert "client_secret=fedex-secret" in body
            return httpx.Response(200, json={"access_token": "fx", "expires_in": 3599})

        async with _oauth_client(handler) as http:
            grant = await request_fedex_token(http, make_config(CarrierCode.FEDEX), "https://fedex.test/oauth")

        assert grant.access_token == "fx"

    @pytest.mark.asyncio
    async def test_usps_defaults_expiry(self):
        """Missing expires_in falls back to an hour."""
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["grant_type"] == "client_credentials"
            return httpx.Response(200, json={"access_token": "usps"})

        async with _oauth_client(handler) as http:
            grant = await request_usps_token(http, make_config(CarrierCode.USPS), "https://usps.test/oauth")

        assert grant.expires_in == 3600

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_before_network(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        config = make_config(CarrierCode.UPS, client_id="", client_secret="")
        async with _oauth_client(handler) as http:
            with pytest.raises(ConfigurationError):
                await request_ups_token(http, config, "https://ups.test/oauth")

    @pytest.mark.asyncio
    async def test_rejected_credentials_keep_carrier_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"error": "invalid_client", "error_description": "Client authentication failed"})

        async with _oauth_client(handler) as http:
            with pytest.raises(AuthenticationError) as exc_info:
                await request_fedex_token(http, make_config(CarrierCode.FEDEX), "https://fedex.test/oauth")

        assert exc_info.value.message == "Client authentication failed"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        async with _oauth_client(handler) as http:
            with pytest.raises(TransientCarrierError) as exc_info:
                await request_ups_token(http, make_config(CarrierCode.UPS), "https://ups.test/oauth")

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_connection_failure_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _oauth_client(handler) as http:
            with pytest.raises(TransientCarrierError):
                await request_usps_token(http, make_config(CarrierCode.USPS), "https://usps.test/oauth")

    @pytest.mark.asyncio
    async def test_missing_token_field(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"token_type": "Bearer"})

        async with _oauth_client(handler) as http:
            with pytest.raises(StructuralParseError):
                await request_ups_token(http, make_config(CarrierCode.UPS), "https://ups.test/oauth")

    @pytest.mark.asyncio
    async def test_usps_payment_token(self):
        """Test payment authorization is requested with the bearer token and payer roles."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["roles"] = json.loads(request.content)["roles"]
            return httpx.Response(200, json={"paymentAuthorizationToken": "pay-1"})

        config = make_config(
            CarrierCode.USPS,
            crid="CR1",
            mid="M1",
            payment_account_type="EPS",
            payment_account_number="ACC1",
        )
        async with _oauth_client(handler) as http:
            grant = await request_usps_payment_token(http, config, "https://usps.test/payments", "bearer-1")

        assert grant.access_token == "pay-1"
        assert grant.expires_in == 27000
        assert seen["auth"] == "Bearer bearer-1"
        assert [role["roleName"] for role in seen["roles"]] == ["PAYER", "LABEL_OWNER"]
        assert seen["roles"][1]["manifestMID"] == "M1"

    @pytest.mark.asyncio
    async def test_usps_payment_requires_label_credentials(self):
        async with _oauth_client(lambda request: httpx.Response(200)) as http:
            with pytest.raises(ConfigurationError):
                await request_usps_payment_token(http, make_config(CarrierCode.USPS), "https://usps.test/payments", "b")


class TestOAuthErrorMessage:
    """Test carrier error text extraction."""

    def test_error_description_wins(self):
        assert oauth_error_message({"error": "x", "error_description": "desc"}, 401) == "desc"

    def test_nested_error_object(self):
        assert oauth_error_message({"error": {"message": "bad secret"}}, 401) == "bad secret"

    def test_errors_list(self):
        assert oauth_error_message({"errors": [{"code": "1", "message": "first"}]}, 400) == "first"

    def test_ups_response_errors(self):
        data = {"response": {"errors": [{"code": "250003", "message": "Invalid Access License number"}]}}
        assert oauth_error_message(data, 401) == "Invalid Access License number"

    def test_fallback_to_status(self):
        assert oauth_error_message(None, 500) == "HTTP 500"
        assert oauth_error_message({}, 403) == "HTTP 403"
