"""
USPS API Client (v3 REST APIs)

- OAuth 2.0 client credentials for the bearer token
- Payment authorization token for label purchase, cached separately with a
  much longer lifetime
- Shipping Options (prices and delivery commitments in one call)
- Labels (create, void)
- Tracking
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
    ConfigurationError,
    ParcelGateError,
    StructuralParseError,
)
from parcelgate.models.carrier import CarrierCode, USPS_MAIL_CLASSES
from parcelgate.models.tracking_event import TrackingEventType
from parcelgate.modules.shipping.base import Label, QuoteResult
from parcelgate.modules.shipping.events import (
    CanonicalEvent,
    TrackingSummary,
    classify_description,
    parse_timestamp,
)
from parcelgate.modules.shipping.http import (
    LABEL_TIMEOUT,
    error_for_status,
    parse_json,
    parse_wire,
    try_parse_json,
)
from parcelgate.modules.shipping.oauth import request_usps_payment_token, request_usps_token
from parcelgate.modules.shipping.postcode import format_us_zip, format_zip_plus4
from parcelgate.modules.shipping.pricing import CarrierRate, apply_pricing
from parcelgate.modules.shipping.token_store import TokenExchange, TokenGrant, TokenKind, TokenScope, TokenStore
from parcelgate.modules.shipping.transit import (
    WEEKDAY_NAMES,
    TransitEstimate,
    TransitSource,
    next_mailing_date,
)
from parcelgate.modules.shipping.transport import AUTH_FAILURE_STATUSES, CarrierTransport
from parcelgate.schemas.shipping import PackageOverrides, RateRequest, ShipmentOrder
from parcelgate.schemas.usps import (
    USPSLabelAddress,
    USPSLabelPackage,
    USPSLabelRequest,
    USPSLabelResponse,
    USPSOptionsRequest,
    USPSOptionsResponse,
    USPSPackageDescription,
    USPSPricingOption,
    USPSShippingOption,
    USPSTrackingEvent,
    USPSTrackingResponse,
)
from parcelgate.services.rate_service import RateQuoteService

logger = logging.getLogger(__name__)

USPS_PRODUCTION_URL = "https://apis.usps.com"
USPS_SANDBOX_URL = "https://apis-tem.usps.com"

OAUTH_TOKEN_PATH = "/oauth2/v3/token"
PAYMENT_AUTH_PATH = "/payments/v3/payment-authorization"
OPTIONS_PATH = "/shipments/v3/options/search"
LABEL_PATH = "/labels/v3/label"
TRACKING_PATH = "/tracking/v3/tracking"

DOMESTIC_MAIL_CLASS = "USPS_GROUND_ADVANTAGE"
DEFAULT_SERVICE_DAYS = 5
DECLARED_VALUE_THRESHOLD = 100.0
MIN_WEIGHT = 0.1

AUTH_FAILED_MESSAGE = "USPS authentication failed. Please check credentials and retry."

LABEL_IMAGE_TYPES = {"PDF": "PDF", "PNG": "PNG", "ZPL": "ZPL203DPI"}


def usps_error_message(data: Optional[Dict[str, Any]], status_code: int) -> str:
    """USPS error text across the error shapes of the v3 APIs."""
    if data:
        error = data.get("error")
        if isinstance(error, dict):
            if error.get("message"):
                return str(error["message"])
            nested = error.get("errors")
            if isinstance(nested, list):
                messages = []
                for item in nested:
                    if not isinstance(item, dict):
                        continue
                    message = item.get("message", "")
                    if item.get("code"):
                        message = f"[{item['code']}] {message}"
                    if message:
                        messages.append(message)
                if messages:
                    return "; ".join(messages)
        if data.get("message"):
            return str(data["message"])
        errors = data.get("errors")
        if isinstance(errors, list):
            messages = [str(e["message"]) for e in errors if isinstance(e, dict) and e.get("message")]
            if messages:
                return "; ".join(messages)
    return f"HTTP {status_code} error"


def _service_days(option: USPSShippingOption) -> Optional[int]:
    if option.serviceDays is not None:
        return option.serviceDays
    commitment = option.effective_commitment
    if commitment is None:
        return None
    if commitment.serviceDays is not None:
        return commitment.serviceDays
    if commitment.name:
        match = re.search(r"\d+", commitment.name)
        return int(match.group()) if match else DEFAULT_SERVICE_DAYS
    return None


def usps_canonical_event(tracking_number: str, event: USPSTrackingEvent) -> Optional[CanonicalEvent]:
    """One USPS tracking event, or None when it carries no usable timestamp."""
    timestamp = parse_timestamp(event.eventTimestamp) or parse_timestamp(event.eventDate, event.eventTime)
    if timestamp is None:
        logger.debug(f"[USPS] Skipping tracking event without timestamp for {tracking_number}")
        return None
    description = event.description
    return CanonicalEvent(
        tracking_number=tracking_number,
        carrier_code=CarrierCode.USPS.value,
        event_code=event.eventCode or description.upper().replace(" ", "_") or "UNKNOWN",
        event_type=classify_description(description),
        event_timestamp=timestamp,
        description=description,
        city=event.eventCity,
        state=event.eventState,
        country=event.eventCountry,
        postal_code=event.eventZIPCode,
        signature=event.name,
        raw_payload=event.model_dump(exclude_none=True),
    )


def parse_usps_tracking(parsed: USPSTrackingResponse) -> TrackingSummary:
    """Tracking response (or tracking webhook body) as a summary with canonical events."""
    carrier = CarrierCode.USPS.value
    tracking_number = parsed.trackingNumber or ""
    if parsed.actualDeliveryDate:
        status = TrackingEventType.DELIVERED
    else:
        status = classify_description(parsed.statusSummary)

    events: List[CanonicalEvent] = []
    for event in parsed.trackingEvents:
        canonical = usps_canonical_event(tracking_number, event)
        if canonical is not None:
            events.append(canonical)

    return TrackingSummary(
        tracking_number=tracking_number,
        carrier_code=carrier,
        status=status,
        status_description=parsed.statusSummary or parsed.status or "",
        service_type=parsed.mailClass,
        expected_delivery_date=parsed.expectedDeliveryDate,
        delivered_at=parse_timestamp(parsed.actualDeliveryDate),
        signed_by=parsed.signedForByName,
        events=events,
    )


class USPSClient:
    """USPS v3 client bound to a CarrierConfigProvider."""

    carrier_code = CarrierCode.USPS.value

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
        return self.config_provider.get(CarrierCode.USPS, store_id)

    @staticmethod
    def base_url(config: CarrierConfig) -> str:
        return USPS_SANDBOX_URL if config.is_sandbox else USPS_PRODUCTION_URL

    @staticmethod
    def _scope(config: CarrierConfig) -> TokenScope:
        return TokenScope(config.store_id, config.environment, config.client_id)

    def _exchange(self, config: CarrierConfig) -> TokenExchange:
        async def exchange() -> TokenGrant:
            http = await self.transport.get_http_client()
            return await request_usps_token(http, config, f"{self.base_url(config)}{OAUTH_TOKEN_PATH}")
        return exchange

    def _payment_exchange(self, config: CarrierConfig) -> TokenExchange:
        async def exchange() -> TokenGrant:
            access_token = await self.token_store.get_token(self.carrier_code, self._scope(config), self._exchange(config))
            http = await self.transport.get_http_client()
            return await request_usps_payment_token(
                http,
                config,
                f"{self.base_url(config)}{PAYMENT_AUTH_PATH}",
                access_token,
            )
        return exchange

    async def get_payment_token(self, config: CarrierConfig) -> str:
        """Payment authorization token; its lifetime is fixed, so no refresh buffer applies."""
        return await self.token_store.get_token(
            self.carrier_code,
            self._scope(config),
            self._payment_exchange(config),
            kind=TokenKind.PAYMENT,
            buffer_seconds=0,
        )

    @staticmethod
    def _headers(token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _make_request(
        self,
        config: CarrierConfig,
        method: str,
        path: str,
        headers: Optional[Callable[[str], Dict[str, str]]] = None,
        retry_on_auth: bool = True,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        return await self.transport.request(
            method,
            f"{self.base_url(config)}{path}",
            self._scope(config),
            self._exchange(config),
            headers=headers or self._headers,
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

    def build_options_request(self, config: CarrierConfig, request: RateRequest) -> USPSOptionsRequest:
        weight = request.weight
        if config.max_weight and weight > config.max_weight:
            weight = config.max_weight
        domestic = request.dest_country == "US"
        package = USPSPackageDescription(
            weight=max(round(weight, 1), MIN_WEIGHT),
            mailClass=DOMESTIC_MAIL_CLASS if domestic else None,
            mailingDate=next_mailing_date(self.now()).isoformat(),
        )
        options = {
            "pricingOptions": [USPSPricingOption(priceType=config.price_type)],
            "originZIPCode": format_us_zip(request.origin_postcode),
            "packageDescription": package,
        }
        if domestic:
            return USPSOptionsRequest(destinationZIPCode=format_us_zip(request.dest_postcode), **options)
        return USPSOptionsRequest(
            foreignPostalCode=request.dest_postcode,
            destinationCountryCode=request.dest_country,
            **options,
        )

    async def _fetch_rates(self, config: CarrierConfig, request: RateRequest) -> QuoteResult:
        payload = self.build_options_request(config, request).to_payload()
        if config.debug:
            logger.debug(f"[USPS] Options request for {request.dest_country} {request.dest_postcode}, {request.weight} lbs")

        response = await self._make_request(config, "POST", OPTIONS_PATH, json=payload)
        if response.status_code != 200:
            message = usps_error_message(try_parse_json(response), response.status_code)
            logger.error(f"[USPS] Shipping options failed: {message}")
            raise error_for_status(response, self.carrier_code, message)

        data = parse_json(response, self.carrier_code)
        parsed = parse_wire(USPSOptionsResponse.model_validate, data, self.carrier_code)
        carrier_rates, transit = self.parse_options(parsed.options)
        rates = apply_pricing(carrier_rates, config, request.package_value)
        return QuoteResult(
            carrier_code=self.carrier_code,
            rates=rates,
            transit={rate.method_code: transit[rate.method_code] for rate in rates if rate.method_code in transit},
        )

    def parse_options(
        self,
        options: List[USPSShippingOption],
    ) -> Tuple[List[CarrierRate], Dict[str, TransitEstimate]]:
        carrier_rates: List[CarrierRate] = []
        transit: Dict[str, TransitEstimate] = {}
        for option in options:
            mail_class = option.mailClass
            if not mail_class:
                continue
            carrier_rates.append(CarrierRate(
                method_code=mail_class,
                title=USPS_MAIL_CLASSES.get(mail_class, mail_class.replace("_", " ").title()),
                amount=option.amount,
            ))
            estimate = self._transit_from(option)
            if estimate:
                transit[mail_class] = estimate
        return carrier_rates, transit

    def _transit_from(self, option: USPSShippingOption) -> Optional[TransitEstimate]:
        commitment = option.effective_commitment
        business_days = _service_days(option)
        if commitment is None and business_days is None:
            return None

        delivery_date = delivery_day = None
        delivered = parse_timestamp(commitment.delivery_timestamp) if commitment else None
        if delivered is not None:
            delivery_date = delivered.date().isoformat()
            delivery_day = WEEKDAY_NAMES[delivered.weekday()]

        return TransitEstimate(
            carrier_code=self.carrier_code,
            method_code=option.mailClass,
            business_days=business_days,
            delivery_date=delivery_date,
            delivery_day=delivery_day,
            guaranteed=bool(commitment and commitment.guaranteedDelivery) or option.guaranteed is True,
            source=TransitSource.RATE_RESPONSE,
        )

    # ==================== Labels ====================

    def build_label_request(
        self,
        config: CarrierConfig,
        order: ShipmentOrder,
        overrides: PackageOverrides,
    ) -> USPSLabelRequest:
        shipper = config.shipper
        address = order.shipping_address
        label_format = (overrides.label_format or config.label_format or "PDF").upper()
        weight = max(overrides.weight or order.total_weight, MIN_WEIGHT)

        request = USPSLabelRequest(
            imageInfo={"imageType": LABEL_IMAGE_TYPES.get(label_format, "PDF"), "labelType": "4X6LABEL"},
            toAddress=USPSLabelAddress(
                firstName=address.first_name or None,
                lastName=address.last_name or None,
                firm=address.company,
                streetAddress=address.street[0] if address.street else "",
                secondaryAddress=address.street[1] if len(address.street) > 1 else None,
                city=address.city,
                state=address.region_code,
                ZIPCode=format_zip_plus4(address.postal_code),
                phone=address.phone_digits or None,
                email=order.customer_email or address.email,
            ),
            fromAddress=USPSLabelAddress(
                firm=shipper.company or shipper.name,
                streetAddress=shipper.address_line1,
                secondaryAddress=shipper.address_line2 or None,
                city=shipper.city,
                state=shipper.state_province,
                ZIPCode=format_zip_plus4(shipper.postal_code),
                phone="".join(c for c in shipper.phone if c.isdigit()) or None,
            ),
            packageDescription=USPSLabelPackage(
                mailClass=overrides.service_code or order.method_code,
                weight=round(weight, 2),
                length=overrides.length or config.default_length,
                width=overrides.width or config.default_width,
                height=overrides.height or config.default_height,
                mailingDate=next_mailing_date(self.now()).isoformat(),
                priceType=config.price_type,
            ),
        )
        if order.grand_total > DECLARED_VALUE_THRESHOLD:
            request.extraServices = [{"serviceCode": "INSURANCE", "value": round(order.grand_total, 2)}]
        return request

    async def create_label(
        self,
        order: ShipmentOrder,
        overrides: Optional[PackageOverrides] = None,
    ) -> Label:
        """
        Buy a USPS label.

        Needs both the bearer token and the payment authorization token. A
        401/403 evicts both and raises AuthenticationError; never retried.
        """
        overrides = overrides or PackageOverrides()
        config = self.config_for(order.store_id)
        if not config.shipper.postal_code:
            raise ConfigurationError(
                "Shipper address not configured",
                details={"carrier": self.carrier_code, "store_id": config.store_id},
            )

        payment_token = await self.get_payment_token(config)
        request = self.build_label_request(config, order, overrides)
        if config.debug:
            logger.debug(
                f"[USPS] Creating label: mail class {request.packageDescription.mailClass}, "
                f"weight {request.packageDescription.weight}"
            )

        def headers(token: str) -> Dict[str, str]:
            return {**self._headers(token), "X-Payment-Authorization-Token": payment_token}

        response = await self._make_request(
            config,
            "POST",
            LABEL_PATH,
            headers=headers,
            retry_on_auth=False,
            timeout=LABEL_TIMEOUT,
            json=request.to_payload(),
        )
        if response.status_code in AUTH_FAILURE_STATUSES:
            await self.token_store.invalidate(self.carrier_code, self._scope(config))
            raise AuthenticationError(
                AUTH_FAILED_MESSAGE,
                carrier_code=self.carrier_code,
                details={"status": response.status_code},
            )
        if response.status_code not in (200, 201):
            message = usps_error_message(try_parse_json(response), response.status_code)
            logger.error(f"[USPS] Label creation failed for order {order.increment_id}: {message}")
            raise error_for_status(response, self.carrier_code, message)

        data = parse_json(response, self.carrier_code)
        parsed = parse_wire(USPSLabelResponse.model_validate, data, self.carrier_code)
        if not parsed.trackingNumber:
            raise StructuralParseError("No tracking number in USPS response", carrier_code=self.carrier_code)
        if not parsed.labelImage:
            raise StructuralParseError("No label image in USPS response", carrier_code=self.carrier_code)
        try:
            label_bytes = base64.b64decode(parsed.labelImage)
        except (binascii.Error, ValueError):
            raise StructuralParseError("USPS label image is not valid base64", carrier_code=self.carrier_code)

        logger.info(f"[USPS] Label created for order {order.increment_id}: {parsed.trackingNumber}")
        image_type = request.imageInfo["imageType"]
        return Label(
            carrier_code=self.carrier_code,
            tracking_number=parsed.trackingNumber,
            label_bytes=label_bytes,
            label_format="ZPL" if image_type == "ZPL203DPI" else image_type,
            service_code=parsed.mailClass or request.packageDescription.mailClass,
            postage=parsed.total_postage,
            zone=parsed.zone,
            weight=parsed.weight,
            shipment_id=parsed.trackingNumber,
            raw_response={key: value for key, value in data.items() if key != "labelImage"},
        )

    async def void_label(self, identifier: str, store_id: Optional[int] = None) -> None:
        config = self.config_for(store_id)
        response = await self._make_request(
            config,
            "DELETE",
            f"{LABEL_PATH}/{identifier}",
            retry_on_auth=False,
        )
        if response.status_code in AUTH_FAILURE_STATUSES:
            raise AuthenticationError(AUTH_FAILED_MESSAGE, carrier_code=self.carrier_code)
        if response.status_code not in (200, 204):
            message = usps_error_message(try_parse_json(response), response.status_code)
            raise error_for_status(response, self.carrier_code, message)
        logger.info(f"[USPS] Voided label {identifier}")

    # ==================== Tracking ====================

    async def track(self, tracking_number: str, store_id: Optional[int] = None) -> TrackingSummary:
        """Current status and event history of a USPS shipment."""
        config = self.config_for(store_id)
        response = await self._make_request(
            config,
            "GET",
            f"{TRACKING_PATH}/{tracking_number}",
            params={"expand": "DETAIL"},
        )
        if response.status_code != 200:
            message = usps_error_message(try_parse_json(response), response.status_code)
            raise error_for_status(response, self.carrier_code, f"USPS Tracking request failed: {message}")

        data = parse_json(response, self.carrier_code)
        return parse_usps_tracking(parse_wire(USPSTrackingResponse.model_validate, data, self.carrier_code))

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
            "message": "Successfully authenticated with USPS API",
            "environment": config.environment,
        }
