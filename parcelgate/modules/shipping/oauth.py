"""
Carrier OAuth exchanges.

Each function performs one client-credentials exchange and returns a
TokenGrant; caching is TokenStore's job. Missing credentials fail before any
network call.
"""
import base64
import logging
from typing import Any, Dict, Optional

import httpx

from parcelgate.core.config import CarrierConfig, settings
from parcelgate.core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    StructuralParseError,
    TransientCarrierError,
)
from parcelgate.modules.shipping.http import body_excerpt, transport_error, try_parse_json
from parcelgate.modules.shipping.token_store import TokenGrant

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


def oauth_error_message(data: Optional[Dict[str, Any]], status_code: int) -> str:
    """Carrier-supplied OAuth error text, or "HTTP <code>"."""
    if data:
        if data.get("error_description"):
            return str(data["error_description"])
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        errors = data.get("errors") or (data.get("response") or {}).get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict) and errors[0].get("message"):
            return str(errors[0]["message"])
        if data.get("message"):
            return str(data["message"])
    return f"HTTP {status_code}"


def _require_credentials(config: CarrierConfig) -> None:
    if not config.has_credentials:
        raise ConfigurationError(
            f"{config.carrier_code.value.upper()} API credentials not configured",
            details={"carrier": config.carrier_code.value, "store_id": config.store_id},
        )


async def _exchange(
    http: httpx.AsyncClient,
    carrier_code: str,
    url: str,
    expires_in_default: int = DEFAULT_EXPIRES_IN,
    token_field: str = "access_token",
    **request_kwargs: Any,
) -> TokenGrant:
    try:
        response = await http.post(url, **request_kwargs)
    except httpx.HTTPError as e:
        raise transport_error(e, carrier_code)

    data = try_parse_json(response)
    if response.status_code != 200:
        message = oauth_error_message(data, response.status_code)
        logger.error(
            f"[{carrier_code.upper()} Auth] Token request failed: {response.status_code} - {body_excerpt(response)}"
        )
        if response.status_code >= 500:
            raise TransientCarrierError(
                message, status_code=response.status_code, carrier_code=carrier_code
            )
        raise AuthenticationError(message, carrier_code=carrier_code, details={"status": response.status_code})

    if not data or not data.get(token_field):
        raise StructuralParseError(
            f"Invalid {carrier_code.upper()} OAuth response - no {token_field}",
            carrier_code=carrier_code,
        )

    try:
        expires_in = int(data.get("expires_in") or expires_in_default)
    except (TypeError, ValueError):
        expires_in = expires_in_default
    return TokenGrant(access_token=str(data[token_field]), expires_in=expires_in)


async def request_ups_token(http: httpx.AsyncClient, config: CarrierConfig, url: str) -> TokenGrant:
    """UPS: Basic auth header plus form grant_type=client_credentials."""
    _require_credentials(config)
    auth_string = base64.b64encode(f"{config.client_id}:{config.client_secret}".encode()).decode()
    return await _exchange(
        http,
        config.carrier_code.value,
        url,
        headers={
            "Authorization": f"Basic {auth_string}",
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        },
        data={"grant_type": "client_credentials"},
    )


async def request_fedex_token(http: httpx.AsyncClient, config: CarrierConfig, url: str) -> TokenGrant:
    """FedEx: credentials in the form body."""
    _require_credentials(config)
    return await _exchange(
        http,
        config.carrier_code.value,
        url,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        data={
            "grant_type": "client_credentials",
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        },
    )


async def request_usps_token(http: httpx.AsyncClient, config: CarrierConfig, url: str) -> TokenGrant:
    """USPS: JSON client-credentials body."""
    _require_credentials(config)
    return await _exchange(
        http,
        config.carrier_code.value,
        url,
        headers={"Content-Type": "application/json", "Accept": "application/json"},
        json={
            "grant_type": "client_credentials",
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        },
    )


def usps_payment_roles(config: CarrierConfig) -> Dict[str, Any]:
    return {
        "roles": [
            {
                "roleName": "PAYER",
                "CRID": config.crid,
                "accountType": config.payment_account_type,
                "accountNumber": config.payment_account_number,
            },
            {
                "roleName": "LABEL_OWNER",
                "CRID": config.crid,
                "MID": config.mid,
                "manifestMID": config.manifest_mid or config.mid,
            },
        ],
    }


async def request_usps_payment_token(
    http: httpx.AsyncClient,
    config: CarrierConfig,
    url: str,
    access_token: str,
) -> TokenGrant:
    """
    USPS payment authorization for label purchase.

    Fetched with a bearer token but cached on its own, with a fixed lifetime.
    """
    if not config.has_label_credentials:
        raise ConfigurationError(
            "USPS label credentials not configured. CRID, MID, and Payment Account are required.",
            details={"carrier": config.carrier_code.value, "store_id": config.store_id},
        )
    if config.debug:
        logger.debug(
            f"[USPS Payment] Requesting payment authorization token "
            f"(crid={config.crid}, mid={config.mid}, account_type={config.payment_account_type})"
        )
    return await _exchange(
        http,
        config.carrier_code.value,
        url,
        expires_in_default=settings.USPS_PAYMENT_TOKEN_TTL_SECONDS,
        token_field="paymentAuthorizationToken",
        headers={
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        },
        json=usps_payment_roles(config),
    )
