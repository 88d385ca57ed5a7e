"""
FedEx API Client

OAuth 2.0 client credentials (form body), Rate Quotes v1, Ship v1 and
shipment cancel. FedEx may return a gzip body even when the request did
not ask for one, so every body goes through the magic-byte decoder.
"""
import base64
import binascii
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from parcelgate.core.cache import get_cache
from parcelgate.core.config import CarrierConfig, CarrierConfigProvider, SettingsCarrierConfigProvider
from parcelgate.core.exceptions import (
    AuthenticationError,
    CarrierRequestError,
    ConfigurationError,
    ParcelGateError,
    StructuralParseError,
)
from parcelgate.models.carrier import CarrierCode, FEDEX_SERVICE_TYPES
from parcelgate.modules.shipping.base import Label, QuoteResult
from parcelgate.modules.shipping.http import (
    LABEL_TIMEOUT,
    body_excerpt,
    error_for_status,
    parse_json,
    parse_wire,
    try_parse_json,
)
from parcelgate.modules.shipping.oauth import request_fedex_token
from parcelgate.modules.shipping.postcode import normalize_postcode
from parcelgate.modules.shipping.pricing import CarrierRate, apply_pricing
from parcelgate.modules.shipping.token_store import TokenExchange, TokenGrant, TokenScope, TokenStore
from parcelgate.modules.shipping.transit import TransitEstimate, TransitSource, next_business_ship_date
from parcelgate.modules.shipping.transport import AUTH_FAILURE_STATUSES, CarrierTransport
from parcelgate.schemas.fedex import (
    FedExAccountNumber,
    FedExAddress,
    FedExCancelRequest,
    FedExContact,
    FedExDimensions,
    FedExLabelSpecification,
    FedExPackageLineItem,
    FedExParty,
    FedExRateReplyDetail,
    FedExRateRequest,
    FedExRateResponse,
    FedExRateShipment,
    FedExShipRequest,
    FedExShipRequestedShipment,
    FedExShipResponse,
    FedExWeight,
)
from parcelgate.schemas.shipping import PackageOverrides, RateRequest, ShipmentOrder
from parcelgate.services.rate_service import RateQuoteService

logger = logging.getLogger(__name__)

FEDEX_PRODUCTION_URL = "https://apis.fedex.com"
FEDEX_SANDBOX_URL = "https://apis-sandbox.fedex.com"

OAUTH_TOKEN_PATH = "/oauth/token"
RATE_PATH = "/rate/v1/rates/quotes"
SHIP_PATH = "/ship/v1/shipments"
CANCEL_PATH = "/ship/v1/shipments/cancel"

DEFAULT_PHONE = "0000000000"
DEFAULT_TRANSIT_DAYS = 5
DECLARED_VALUE_THRESHOLD = 100.0
MIN_LABEL_WEIGHT = 0.5
MIN_RATE_WEIGHT = 0.1
THERMAL_RESOLUTION = 203

AUTH_FAILED_MESSAGE = "FedEx authentication failed. Please check credentials and retry."

TRANSIT_DAY_WORDS: Dict[str, int] = {
    word: number
    for number, word in enumerate((
        "ONE", "TWO", "THREE", "FOUR", "FIVE", "SIX", "SEVEN", "EIGHT", "NINE", "TEN",
        "ELEVEN", "TWELVE", "THIRTEEN", "FOURTEEN", "FIFTEEN", "SIXTEEN", "SEVENTEEN",
        "EIGHTEEN", "NINETEEN", "TWENTY",
    ), start=1)
}

# Store label format -> FedEx imageType
LABEL_IMAGE_TYPES = {"PDF": "PDF", "PNG": "PNG", "ZPL": "ZPLII", "EPL": "EPL2"}


def fedex_transit_days(value: Any) -> int:
    """
    Business days from a FedEx transit value.

    Accepts "THREE_DAYS", "ONE_DAY", an object carrying one of those, or any
    text with a number in it. Unreadable values count as 5 days.
    """
    if isinstance(value, dict):
        value = value.get("minimumTransitTime") or value.get("value") or value.get("description")
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value or "").upper()
    word = text.split("_", 1)[0]
    if word in TRANSIT_DAY_WORDS and text.endswith(("_DAY", "_DAYS")):
        return TRANSIT_DAY_WORDS[word]
    match = re.search(r"\d+", text)
    if match:
        return int(match.group())
    return DEFAULT_TRANSIT_DAYS


def fedex_error_message(response: httpx.Response) -> str:
    """`code: message` for every error, else the top-level message, else HTTP status and body."""
    data = try_parse_json(response)
    if data:
        errors = data.get("errors")
        if isinstance(errors, list) and errors:
            parts = [
                f"{error.get('code', '')}: {error.get('message', '')}"
                for error in errors
                if isinstance(error, dict)
            ]
            if parts:
                return ", ".join(parts)
        if data.get("message"):
            return str(data["message"])
    return f"HTTP {response.status_code}: {body_excerpt(response)}"


class FedExClient:
    """FedEx REST client bound to a CarrierConfigProvider."""

    carrier_code = CarrierCode.FEDEX.value

    def __init__(
        self,
        config_provider: Optional[CarrierConfigProvider] = None,
        token_store: Optional[TokenStore] = None,
        quote_service: Optional[RateQuoteService] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.config_provider = config_provider or SettingsCarrierConfigProvider()
        self.token_store = token_store or TokenStore(get_cache())
        self.quotes = quote_service or RateQuoteService()
        self.transport = CarrierTransport(self.carrier_code, self.token_store, http_transport=http_transport)
        self.now = now or datetime.now

    def config_for(self, store_id: Optional[int] = None) -> CarrierConfig:
        return self.config_provider.get(CarrierCode.FEDEX, store_id)

    @staticmethod
    def base_url(config: CarrierConfig) -> str:
        return FEDEX_SANDBOX_URL if config.is_sandbox else FEDEX_PRODUCTION_URL

    @staticmethod
    def _scope(config: CarrierConfig) -> TokenScope:
        return TokenScope(config.store_id, config.environment, config.client_id)

    def _exchange(self, config: CarrierConfig) -> TokenExchange:
        async def exchange() -> TokenGrant:
            http = await self.transport.get_http_client()
            return await request_fedex_token(http, config, f"{self.base_url(config)}{OAUTH_TOKEN_PATH}")
        return exchange

    @staticmethod
    def _headers(token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "X-locale": "en_US",
            "Accept-Encoding": "gzip, deflate",
        }

    async def _make_request(
        self,
        config: CarrierConfig,
        method: str,
        path: str,
        retry_on_auth: bool = True,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        return await self.transport.request(
            method,
            f"{self.base_url(config)}{path}",
            self._scope(config),
            self._exchange(config),
            headers=self._headers,
            retry_on_auth=retry_on_auth,
            timeout=timeout,
            **kwargs,
        )

    async def close(self):
        await self.transport.close()

    # ==================== Rating ====================

    async def quote(self, request: RateRequest) -> QuoteResult:
        config = self.config_for(request.store_id)
        return await self.quotes.quote(config, request, self._fetch_rates)

    async def fetch_rates(self, request: RateRequest) -> QuoteResult:
        config = self.config_for(request.store_id)
        return await self._fetch_rates(config, request.with_origin(config.shipper))

    def build_rate_request(self, config: CarrierConfig, request: RateRequest) -> FedExRateRequest:
        return FedExRateRequest(
            accountNumber=FedExAccountNumber(value=config.account_number),
            requestedShipment=FedExRateShipment(
                shipper=FedExParty(address=FedExAddress(
                    city=request.origin_city or None,
                    stateOrProvinceCode=request.origin_region,
                    postalCode=normalize_postcode(request.origin_postcode, request.origin_country),
                    countryCode=request.origin_country or "US",
                )),
                recipient=FedExParty(address=FedExAddress(
                    city=request.dest_city or None,
                    stateOrProvinceCode=request.dest_region,
                    postalCode=normalize_postcode(request.dest_postcode, request.dest_country),
                    countryCode=request.dest_country,
                    residential=request.is_residential,
                )),
                packagingType=config.package_type or "YOUR_PACKAGING",
                requestedPackageLineItems=[FedExPackageLineItem(
                    weight=FedExWeight(value=max(request.rounded_weight, MIN_RATE_WEIGHT)),
                    dimensions=FedExDimensions(
                        length=int(round(request.length or config.default_length)),
                        width=int(round(request.width or config.default_width)),
                        height=int(round(request.height or config.default_height)),
                    ),
                )],
            ),
        )

    async def _fetch_rates(self, config: CarrierConfig, request: RateRequest) -> QuoteResult:
        payload = self.build_rate_request(config, request).to_payload()
        if config.debug:
            logger.debug(f"[FEDEX] Rate request for {request.dest_country} {request.dest_postcode}, {request.weight} lbs")

        response = await self._make_request(config, "POST", RATE_PATH, json=payload)
        if response.status_code != 200:
            message = fedex_error_message(response)
            logger.error(f"[FEDEX] Rating failed: {message}")
            raise error_for_status(response, self.carrier_code, message)

        data = parse_json(response, self.carrier_code)
        parsed = parse_wire(FedExRateResponse.from_response, data, self.carrier_code)
        carrier_rates, transit = self.parse_rates(parsed.rateReplyDetails)
        rates = apply_pricing(carrier_rates, config, request.package_value)
        return QuoteResult(
            carrier_code=self.carrier_code,
            rates=rates,
            transit={rate.method_code: transit[rate.method_code] for rate in rates if rate.method_code in transit},
        )

    def parse_rates(
        self,
        details: List[FedExRateReplyDetail],
    ) -> Tuple[List[CarrierRate], Dict[str, TransitEstimate]]:
        carrier_rates: List[CarrierRate] = []
        transit: Dict[str, TransitEstimate] = {}
        for detail in details:
            if not detail.serviceType or not detail.ratedShipmentDetails:
                continue
            carrier_rates.append(CarrierRate(
                method_code=detail.serviceType,
                title=detail.serviceName or FEDEX_SERVICE_TYPES.get(detail.serviceType, detail.serviceType),
                amount=detail.ratedShipmentDetails[0].amount,
            ))
            estimate = self._transit_from(detail)
            if estimate:
                transit[detail.serviceType] = estimate
        return carrier_rates, transit

    def _transit_from(self, detail: FedExRateReplyDetail) -> Optional[TransitEstimate]:
        """Estimate from operationalDetail and commit, or None when neither has one."""
        operational = detail.operationalDetail
        commit = detail.commit

        raw_days = operational.transitTime if operational else None
        if raw_days is None and commit is not None:
            raw_days = commit.transitDays

        commit_timestamp = commit.commitTimestamp if commit else None
        delivery_date = (operational.deliveryDate if operational else None) or (
            commit_timestamp[:10] if commit_timestamp else None
        )
        delivery_time = (operational.deliveryTime if operational else None) or (
            commit_timestamp[11:16] if commit_timestamp and len(commit_timestamp) >= 16 else None
        )
        date_detail = commit.dateDetail if commit else None
        delivery_day = (date_detail.dayOfWeek or date_detail.dayCxsFormat if date_detail else None) or (
            operational.deliveryDay if operational else None
        )

        if raw_days is None and not delivery_date:
            return None

        return TransitEstimate(
            carrier_code=self.carrier_code,
            method_code=detail.serviceType,
            business_days=fedex_transit_days(raw_days) if raw_days is not None else None,
            delivery_date=delivery_date,
            delivery_day=delivery_day,
            delivery_time=delivery_time,
            guaranteed=bool(commit and (commit.guaranteedDeliveryTimestamp or commit.commitMessageDetails)),
            source=TransitSource.RATE_RESPONSE,
        )

    # ==================== Shipping ====================

    def build_ship_request(
        self,
        config: CarrierConfig,
        order: ShipmentOrder,
        overrides: PackageOverrides,
    ) -> FedExShipRequest:
        shipper = config.shipper
        address = order.shipping_address
        packaging = config.package_type or "YOUR_PACKAGING"
        label_format = (overrides.label_format or config.label_format or "PDF").upper()
        image_type = LABEL_IMAGE_TYPES.get(label_format, "PDF")
        thermal = image_type in ("ZPLII", "EPL2")

        weight = round(max(overrides.weight or order.total_weight, MIN_LABEL_WEIGHT), 2)
        line_item = FedExPackageLineItem(
            weight=FedExWeight(value=weight),
            customerReferences=[{"customerReferenceType": "CUSTOMER_REFERENCE", "value": order.increment_id}],
        )
        if packaging == "YOUR_PACKAGING":
            line_item.dimensions = FedExDimensions(
                length=int(round(overrides.length or config.default_length)),
                width=int(round(overrides.width or config.default_width)),
                height=int(round(overrides.height or config.default_height)),
            )
        if order.grand_total > DECLARED_VALUE_THRESHOLD:
            line_item.declaredValue = {"amount": round(order.grand_total, 2), "currency": "USD"}

        return FedExShipRequest(
            accountNumber=FedExAccountNumber(value=config.account_number),
            requestedShipment=FedExShipRequestedShipment(
                shipper=FedExParty(
                    contact=FedExContact(
                        personName=shipper.name,
                        companyName=shipper.company or None,
                        phoneNumber="".join(c for c in shipper.phone if c.isdigit()) or DEFAULT_PHONE,
                    ),
                    address=FedExAddress(
                        streetLines=[line for line in (shipper.address_line1, shipper.address_line2) if line],
                        city=shipper.city,
                        stateOrProvinceCode=shipper.state_province,
                        postalCode=shipper.postal_code,
                        countryCode=shipper.country_code or "US",
                    ),
                ),
                recipients=[FedExParty(
                    contact=FedExContact(
                        personName=address.full_name,
                        companyName=address.company,
                        phoneNumber=address.phone_digits or DEFAULT_PHONE,
                    ),
                    address=FedExAddress(
                        streetLines=address.street,
                        city=address.city,
                        stateOrProvinceCode=address.region_code,
                        postalCode=address.postal_code,
                        countryCode=address.country_code,
                        residential=address.is_residential,
                    ),
                )],
                shipDatestamp=next_business_ship_date(config.cutoff_hour, self.now()).isoformat(),
                serviceType=overrides.service_code or order.method_code,
                packagingType=packaging,
                shippingChargesPayment={
                    "paymentType": "SENDER",
                    "payor": {"responsibleParty": {"accountNumber": {"value": config.account_number}}},
                },
                labelSpecification=FedExLabelSpecification(
                    imageType=image_type,
                    labelStockType=config.label_stock_type or ("STOCK_4X6" if thermal else "PAPER_4X6"),
                    resolution=THERMAL_RESOLUTION if thermal else None,
                ),
                requestedPackageLineItems=[line_item],
            ),
        )

    async def create_label(
        self,
        order: ShipmentOrder,
        overrides: Optional[PackageOverrides] = None,
    ) -> Label:
        overrides = overrides or PackageOverrides()
        config = self.config_for(order.store_id)
        if not config.account_number:
            raise ConfigurationError(
                "FedEx account number not configured",
                details={"carrier": self.carrier_code, "store_id": config.store_id},
            )

        request = self.build_ship_request(config, order, overrides)
        shipment = request.requestedShipment
        logger.info(f"[FEDEX] Creating label for order {order.increment_id}, service {shipment.serviceType}")

        response = await self._make_request(
            config,
            "POST",
            SHIP_PATH,
            retry_on_auth=False,
            timeout=LABEL_TIMEOUT,
            json=request.to_payload(),
        )
        if response.status_code in AUTH_FAILURE_STATUSES:
            raise AuthenticationError(
                AUTH_FAILED_MESSAGE,
                carrier_code=self.carrier_code,
                details={"status": response.status_code},
            )
        if response.status_code != 200:
            message = fedex_error_message(response)
            logger.error(f"[FEDEX] Label creation failed for order {order.increment_id}: {message}")
            raise error_for_status(response, self.carrier_code, message)

        data = parse_json(response, self.carrier_code)
        parsed = parse_wire(FedExShipResponse.from_response, data, self.carrier_code)
        piece = parsed.transactionShipments[0].piece if parsed.transactionShipments else None
        if piece is None:
            raise StructuralParseError("FedEx response missing piece details", carrier_code=self.carrier_code)
        if not piece.tracking:
            raise StructuralParseError("No tracking number in FedEx response", carrier_code=self.carrier_code)
        image = piece.label_image
        if not image:
            raise StructuralParseError("No label image in FedEx response", carrier_code=self.carrier_code)
        try:
            label_bytes = base64.b64decode(image)
        except (binascii.Error, ValueError):
            raise StructuralParseError("FedEx label image is not valid base64", carrier_code=self.carrier_code)

        logger.info(f"[FEDEX] Label created for order {order.increment_id}: {piece.tracking}")
        image_type = shipment.labelSpecification.imageType
        return Label(
            carrier_code=self.carrier_code,
            tracking_number=piece.tracking,
            label_bytes=label_bytes,
            label_format={"ZPLII": "ZPL", "EPL2": "EPL"}.get(image_type, image_type),
            service_code=shipment.serviceType,
            postage=piece.postage,
            weight=piece.billed_weight or shipment.requestedPackageLineItems[0].weight.value,
            shipment_id=piece.tracking,
            raw_response=data,
        )

    # ==================== Void ====================

    async def void_label(self, identifier: str, store_id: Optional[int] = None) -> None:
        config = self.config_for(store_id)
        body = FedExCancelRequest(
            accountNumber=FedExAccountNumber(value=config.account_number),
            trackingNumber=identifier,
        )
        response = await self._make_request(
            config,
            "PUT",
            CANCEL_PATH,
            retry_on_auth=False,
            json=body.to_payload(),
        )
        if response.status_code in AUTH_FAILURE_STATUSES:
            raise AuthenticationError(AUTH_FAILED_MESSAGE, carrier_code=self.carrier_code)
        if response.status_code != 200:
            raise error_for_status(response, self.carrier_code, fedex_error_message(response))

        output = (try_parse_json(response) or {}).get("output") or {}
        if output.get("cancelledShipment") is False:
            raise CarrierRequestError(
                output.get("message") or "FedEx did not cancel the shipment",
                status_code=response.status_code,
                carrier_code=self.carrier_code,
            )
        logger.info(f"[FEDEX] Cancelled shipment {identifier}")

    # ==================== Credentials ====================

    async def test_credentials(self, store_id: Optional[int] = None) -> Dict[str, Any]:
        config = self.config_for(store_id)
        scope = self._scope(config)
        await self.token_store.invalidate(self.carrier_code, scope)
        try:
            await self.token_store.get_token(self.carrier_code, scope, self._exchange(config))
        except ParcelGateError as e:
            return {"success": False, "message": e.message, "environment": config.environment}
        return {
            "success": True,
            "message": "Successfully authenticated with FedEx API",
            "environment": config.environment,
        }
