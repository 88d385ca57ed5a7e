"""
UPS API Client

Implements UPS OAuth 2.0 client credentials and the shipping APIs the
integration uses:
- Rating (Shop, all services in one call)
- Time in Transit (optional enrichment for methods without delivery data)
- Shipping (create labels)
- Void

All calls go through CarrierTransport, so tokens come from the shared
TokenStore and a 401/403 always evicts the cached token.
"""
import base64
import binascii
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from parcelgate.core.config import (
    CarrierConfig,
    CarrierConfigProvider,
    SettingsCarrierConfigProvider,
    settings,
)
from parcelgate.core.exceptions import (
    AuthenticationError,
    CarrierRequestError,
    ConfigurationError,
    ParcelGateError,
    StructuralParseError,
)
from parcelgate.core.cache import get_cache
from parcelgate.models.carrier import CarrierCode, UPS_SERVICE_CODES
from parcelgate.modules.shipping.base import BestEffort, Ignored, Label, Ok, QuoteResult
from parcelgate.modules.shipping.http import (
    LABEL_TIMEOUT,
    error_for_status,
    parse_json,
    parse_wire,
    try_parse_json,
)
from parcelgate.modules.shipping.oauth import request_ups_token
from parcelgate.modules.shipping.pricing import CarrierRate, apply_pricing
from parcelgate.modules.shipping.token_store import TokenExchange, TokenGrant, TokenScope, TokenStore
from parcelgate.modules.shipping.transit import (
    WEEKDAY_NAMES,
    TransitEstimate,
    TransitSource,
    add_business_days,
    next_pickup_date,
)
from parcelgate.modules.shipping.transport import AUTH_FAILURE_STATUSES, CarrierTransport
from parcelgate.schemas.shipping import PackageOverrides, RateRequest, ShipmentOrder
from parcelgate.schemas.ups import (
    UPSAddress,
    UPSBillShipper,
    UPSCode,
    UPSDimensions,
    UPSLabelSpecification,
    UPSPackage,
    UPSPackageWeight,
    UPSParty,
    UPSPhone,
    UPSRateRequest,
    UPSRateResponse,
    UPSRateShipment,
    UPSRatedShipment,
    UPSRequestInfo,
    UPSShipment,
    UPSShipmentCharge,
    UPSShipmentRequest,
    UPSShipmentResponse,
    UPSTransitRequest,
    UPSTransitResponse,
)
from parcelgate.services.rate_service import RateQuoteService

logger = logging.getLogger(__name__)

# UPS API URLs
UPS_PRODUCTION_URL = "https://onlinetools.ups.com"
UPS_SANDBOX_URL = "https://wwwcie.ups.com"

# OAuth endpoints
OAUTH_TOKEN_PATH = "/security/v1/oauth/token"

# API endpoints
RATING_PATH = "/api/rating/v2205/Shop"
TRANSIT_PATH = "/api/shipments/v1/transittimes"
SHIPPING_PATH = "/api/shipments/v2205/ship"
VOID_PATH = "/api/shipments/v2205/void/cancel"

DEFAULT_PHONE = "0000000000"
LABEL_FORMATS = ("GIF", "PNG", "PDF", "ZPL", "EPL")
DECLARED_VALUE_THRESHOLD = 100.0
MIN_LABEL_WEIGHT = 0.5
MIN_RATE_WEIGHT = 0.1

AUTH_FAILED_MESSAGE = "UPS authentication failed. Please check credentials and retry."

# Time in Transit service levels -> Rating service codes
TRANSIT_SERVICE_MAP: Dict[str, str] = {
    "GND": "03",
    "3DS": "12",
    "2DA": "02",
    "2DM": "59",
    "1DA": "01",
    "1DM": "14",
    "1DP": "13",
    "STD": "11",
    "XPR": "07",
    "XDM": "54",
    "XPD": "08",
    "WXS": "65",
}


def ups_error_message(data: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Carrier error text from a UPS error body.

    Checked in order: response.errors[0].message, the Fault detail
    description, then RateResponse.Response.ResponseStatus.Description.
    """
    if not data:
        return None

    errors = (data.get("response") or {}).get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict) and errors[0].get("message"):
        return str(errors[0]["message"])

    fault_error = (
        ((data.get("Fault") or {}).get("detail") or {}).get("Errors") or {}
    ).get("ErrorDetail") or {}
    if isinstance(fault_error, list):
        fault_error = fault_error[0] if fault_error else {}
    description = (fault_error.get("PrimaryErrorCode") or {}).get("Description")
    if description:
        return str(description)

    status = (((data.get("RateResponse") or {}).get("Response") or {}).get("ResponseStatus") or {})
    if status.get("Description"):
        return str(status["Description"])

    return None


def ups_label_error_message(data: Optional[Dict[str, Any]]) -> Optional[str]:
    """Every `code: message` pair of a shipping error response."""
    errors = ((data or {}).get("response") or {}).get("errors")
    if isinstance(errors, list) and errors:
        parts = []
        for error in errors:
            if not isinstance(error, dict):
                continue
            code = error.get("code")
            message = error.get("message", "")
            parts.append(f"{code}: {message}" if code else str(message))
        if parts:
            return ", ".join(parts)
    return ups_error_message(data)


def _ups_date(value: Optional[str]) -> Optional[str]:
    """UPS returns YYYYMMDD; normalize to Y-m-d."""
    if not value:
        return None
    digits = value.replace("-", "")
    if len(digits) == 8 and digits.isdigit():
        return f"{digits[:4]}-{digits[4:6]}-{digits[6:]}"
    return value


class UPSClient:
    """
    UPS API client bound to a CarrierConfigProvider.

    Configuration is resolved per call (per store), tokens are shared through
    the TokenStore, and quoting is orchestrated by RateQuoteService.
    """

    carrier_code = CarrierCode.UPS.value

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
        return self.config_provider.get(CarrierCode.UPS, store_id)

    @staticmethod
    def base_url(config: CarrierConfig) -> str:
        return UPS_SANDBOX_URL if config.is_sandbox else UPS_PRODUCTION_URL

    @staticmethod
    def _scope(config: CarrierConfig) -> TokenScope:
        return TokenScope(config.store_id, config.environment, config.client_id)

    def _exchange(self, config: CarrierConfig) -> TokenExchange:
        async def exchange() -> TokenGrant:
            http = await self.transport.get_http_client()
            return await request_ups_token(http, config, f"{self.base_url(config)}{OAUTH_TOKEN_PATH}")
        return exchange

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "transId": f"pg_{self.now().strftime('%Y%m%d%H%M%S%f')}",
            "transactionSrc": settings.APP_NAME,
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
        """Close HTTP client."""
        await self.transport.close()

    # ==================== Rating ====================

    async def quote(self, request: RateRequest) -> QuoteResult:
        """Cached quote for the request's store."""
        config = self.config_for(request.store_id)
        return await self.quotes.quote(config, request, self._fetch_rates)

    async def fetch_rates(self, request: RateRequest) -> QuoteResult:
        config = self.config_for(request.store_id)
        return await self._fetch_rates(config, request.with_origin(config.shipper))

    def build_rate_request(self, config: CarrierConfig, request: RateRequest) -> UPSRateRequest:
        """Shop request for every service between origin and destination."""
        shipper_address = UPSAddress(
            AddressLine=[request.origin_street] if request.origin_street else [],
            City=request.origin_city,
            StateProvinceCode=request.origin_region,
            PostalCode=request.origin_postcode,
            CountryCode=request.origin_country or "US",
        )
        ship_to = UPSAddress(
            AddressLine=[request.dest_street] if request.dest_street else [],
            City=request.dest_city,
            StateProvinceCode=request.dest_region,
            PostalCode=request.dest_postcode,
            CountryCode=request.dest_country,
            ResidentialAddressIndicator="" if request.is_residential else None,
        )
        length = request.length or config.default_length
        width = request.width or config.default_width
        height = request.height or config.default_height

        return UPSRateRequest(
            Request=UPSRequestInfo(
                RequestOption="Shop",
                TransactionReference={"CustomerContext": "Rating and Service"},
            ),
            Shipment=UPSRateShipment(
                Shipper=UPSParty(
                    Name=config.shipper.company or config.shipper.name,
                    ShipperNumber=config.account_number or None,
                    Address=shipper_address,
                ),
                ShipTo=UPSParty(Name=request.dest_company or None, Address=ship_to),
                ShipFrom=UPSParty(
                    Name=config.shipper.company or config.shipper.name,
                    Address=shipper_address,
                ),
                PaymentDetails={
                    "ShipmentCharge": UPSShipmentCharge(
                        BillShipper=UPSBillShipper(AccountNumber=config.account_number),
                    ),
                },
                Package=[UPSPackage(
                    PackagingType=UPSCode(Code=config.package_type or "02"),
                    Dimensions=UPSDimensions(
                        Length=str(round(length, 1)),
                        Width=str(round(width, 1)),
                        Height=str(round(height, 1)),
                    ),
                    PackageWeight=UPSPackageWeight(Weight=str(max(request.rounded_weight, MIN_RATE_WEIGHT))),
                )],
            ),
        )

    async def _fetch_rates(self, config: CarrierConfig, request: RateRequest) -> QuoteResult:
        payload = self.build_rate_request(config, request).to_payload()
        if config.debug:
            logger.debug(f"[UPS] Rate request for {request.dest_country} {request.dest_postcode}, {request.weight} lbs")

        response = await self._make_request(config, "POST", RATING_PATH, json=payload)
        if response.status_code != 200:
            data = try_parse_json(response)
            message = ups_error_message(data) or f"HTTP {response.status_code}"
            logger.error(f"[UPS] Rating failed: {response.status_code} - {message}")
            raise error_for_status(response, self.carrier_code, message)

        data = parse_json(response, self.carrier_code)
        parsed = parse_wire(UPSRateResponse.from_response, data, self.carrier_code)
        if not parsed.RatedShipment:
            message = ups_error_message(data)
            if message:
                raise CarrierRequestError(message, status_code=response.status_code, carrier_code=self.carrier_code)
            return QuoteResult(carrier_code=self.carrier_code)

        carrier_rates, transit = self.parse_rates(parsed.RatedShipment)

        if config.transit_enabled:
            missing = [rate.method_code for rate in carrier_rates if not transit.get(rate.method_code)]
            if missing:
                outcome = await self.fetch_transit_times(config, request)
                if isinstance(outcome, Ok):
                    for method_code in missing:
                        if method_code in outcome.value:
                            transit[method_code] = outcome.value[method_code]
                else:
                    logger.warning(f"[UPS] Time in transit skipped: {outcome.reason}")

        rates = apply_pricing(carrier_rates, config, request.package_value)
        return QuoteResult(
            carrier_code=self.carrier_code,
            rates=rates,
            transit={rate.method_code: transit[rate.method_code] for rate in rates if rate.method_code in transit},
        )

    def parse_rates(
        self,
        rated_shipments: List[UPSRatedShipment],
    ) -> Tuple[List[CarrierRate], Dict[str, TransitEstimate]]:
        """
        Carrier prices plus guaranteed-delivery estimates.

        Raises:
            StructuralParseError: services were returned but none carries a price
        """
        carrier_rates: List[CarrierRate] = []
        transit: Dict[str, TransitEstimate] = {}
        today = self.now().date()

        for shipment in rated_shipments:
            code = shipment.Service.Code
            if not code:
                continue
            price = shipment.price
            if price is None:
                logger.warning(f"[UPS] Service {code} returned without a price, skipping")
                continue

            title = UPS_SERVICE_CODES.get(code, f"UPS Service {code}")
            guaranteed = shipment.GuaranteedDelivery
            if guaranteed and guaranteed.BusinessDaysInTransit:
                days = guaranteed.BusinessDaysInTransit
                title = f"{title} ({days} {'day' if days == 1 else 'days'})"
                delivery = add_business_days(today, days)
                transit[code] = TransitEstimate(
                    carrier_code=self.carrier_code,
                    method_code=code,
                    business_days=days,
                    delivery_date=delivery.isoformat(),
                    delivery_day=WEEKDAY_NAMES[delivery.weekday()],
                    delivery_time=guaranteed.DeliveryByTime,
                    guaranteed=True,
                    source=TransitSource.GUARANTEED_DELIVERY,
                )

            carrier_rates.append(CarrierRate(method_code=code, title=title, amount=price))

        if rated_shipments and not carrier_rates:
            raise StructuralParseError("UPS returned services without prices", carrier_code=self.carrier_code)
        return carrier_rates, transit

    # ==================== Time in Transit ====================

    def build_transit_request(self, config: CarrierConfig, request: RateRequest) -> UPSTransitRequest:
        ship_date = next_pickup_date(config, self.now())
        return UPSTransitRequest(
            originCountryCode=request.origin_country or "US",
            originStateProvince=request.origin_region,
            originCityName=request.origin_city,
            originPostalCode=request.origin_postcode,
            destinationCountryCode=request.dest_country,
            destinationStateProvince=request.dest_region,
            destinationCityName=request.dest_city,
            destinationPostalCode=request.dest_postcode,
            weight=str(max(request.rounded_weight, MIN_RATE_WEIGHT)),
            shipDate=ship_date.isoformat(),
            shipTime=f"{config.cutoff_time}:00",
            residentialIndicator="01" if request.dest_street else "02",
        )

    async def fetch_transit_times(
        self,
        config: CarrierConfig,
        request: RateRequest,
    ) -> BestEffort[Dict[str, TransitEstimate]]:
        """
        Delivery estimates from the Time in Transit API, keyed by rating code.

        Never raises: any failure comes back as Ignored and the quote
        proceeds without the extra data.
        """
        payload = self.build_transit_request(config, request).to_payload()
        try:
            response = await self._make_request(config, "POST", TRANSIT_PATH, json=payload)
        except ParcelGateError as e:
            return Ignored(reason=e.message)

        if response.status_code != 200:
            return Ignored(reason=ups_error_message(try_parse_json(response)) or f"HTTP {response.status_code}")

        data = try_parse_json(response)
        if data is None:
            return Ignored(reason="invalid JSON")
        try:
            parsed = parse_wire(UPSTransitResponse.from_response, data, self.carrier_code)
        except StructuralParseError as e:
            return Ignored(reason=e.message)

        estimates: Dict[str, TransitEstimate] = {}
        for service in parsed.services:
            code = TRANSIT_SERVICE_MAP.get(service.serviceLevel or "")
            if not code:
                continue
            estimates[code] = TransitEstimate(
                carrier_code=self.carrier_code,
                method_code=code,
                business_days=service.businessTransitDays,
                delivery_date=_ups_date(service.deliveryDate),
                delivery_day=service.deliveryDayOfWeek,
                delivery_time=service.deliveryTime,
                guaranteed=service.guaranteeIndicator == "1",
                source=TransitSource.TRANSIT_API,
            )
        return Ok(estimates)

    # ==================== Shipping ====================

    def build_shipment_request(
        self,
        config: CarrierConfig,
        order: ShipmentOrder,
        overrides: PackageOverrides,
    ) -> UPSShipmentRequest:
        shipper = config.shipper
        address = order.shipping_address
        service_code = overrides.service_code or order.method_code
        label_format = (overrides.label_format or config.label_format or "GIF").upper()
        if label_format not in LABEL_FORMATS:
            label_format = "GIF"

        shipper_address = UPSAddress(
            AddressLine=[line for line in (shipper.address_line1, shipper.address_line2) if line],
            City=shipper.city,
            StateProvinceCode=shipper.state_province,
            PostalCode=shipper.postal_code,
            CountryCode=shipper.country_code or "US",
        )
        shipper_phone = UPSPhone(Number="".join(c for c in shipper.phone if c.isdigit()) or DEFAULT_PHONE)

        weight = max(overrides.weight or order.total_weight, MIN_LABEL_WEIGHT)
        package = UPSPackage(
            Description=f"Order #{order.increment_id}",
            Packaging=UPSCode(Code=config.package_type or "02"),
            Dimensions=UPSDimensions(
                Length=str(int(round(overrides.length or config.default_length))),
                Width=str(int(round(overrides.width or config.default_width))),
                Height=str(int(round(overrides.height or config.default_height))),
            ),
            PackageWeight=UPSPackageWeight(Weight=str(round(weight, 1))),
        )
        if order.grand_total > DECLARED_VALUE_THRESHOLD:
            package.PackageServiceOptions = {
                "DeclaredValue": {"CurrencyCode": "USD", "MonetaryValue": f"{order.grand_total:.2f}"},
            }

        return UPSShipmentRequest(
            Request=UPSRequestInfo(
                RequestOption="nonvalidate",
                TransactionReference={"CustomerContext": f"Order {order.increment_id}"},
            ),
            Shipment=UPSShipment(
                Description=f"Order #{order.increment_id}",
                Shipper=UPSParty(
                    Name=(shipper.company or shipper.name)[:35],
                    AttentionName=shipper.name[:35] or None,
                    ShipperNumber=config.account_number,
                    Phone=shipper_phone,
                    Address=shipper_address,
                ),
                ShipTo=UPSParty(
                    Name=(address.company or address.full_name)[:35],
                    AttentionName=address.full_name[:35] or None,
                    Phone=UPSPhone(Number=address.phone_digits or DEFAULT_PHONE),
                    Address=UPSAddress(
                        AddressLine=address.street[:3],
                        City=address.city,
                        StateProvinceCode=address.region_code,
                        PostalCode=address.postal_code,
                        CountryCode=address.country_code,
                        ResidentialAddressIndicator=None if address.company else "",
                    ),
                ),
                ShipFrom=UPSParty(
                    Name=(shipper.company or shipper.name)[:35],
                    AttentionName=shipper.name[:35] or None,
                    Phone=shipper_phone,
                    Address=shipper_address,
                ),
                PaymentInformation={
                    "ShipmentCharge": [UPSShipmentCharge(
                        BillShipper=UPSBillShipper(AccountNumber=config.account_number),
                    )],
                },
                Service=UPSCode(Code=service_code, Description=UPS_SERVICE_CODES.get(service_code)),
                Package=[package],
                ReferenceNumber=[{"Code": "00", "Value": order.increment_id}],
            ),
            LabelSpecification=UPSLabelSpecification(LabelImageFormat=UPSCode(Code=label_format)),
        )

    async def create_label(
        self,
        order: ShipmentOrder,
        overrides: Optional[PackageOverrides] = None,
    ) -> Label:
        """
        Create a UPS shipment and return its label.

        Not retried: a 401/403 evicts the token and raises AuthenticationError
        so the operator can retry explicitly.
        """
        overrides = overrides or PackageOverrides()
        config = self.config_for(order.store_id)
        if not config.account_number:
            raise ConfigurationError(
                "UPS account number not configured",
                details={"carrier": self.carrier_code, "store_id": config.store_id},
            )
        if not config.shipper.postal_code:
            raise ConfigurationError(
                "Shipper address not configured",
                details={"carrier": self.carrier_code, "store_id": config.store_id},
            )

        request = self.build_shipment_request(config, order, overrides)
        logger.info(f"[UPS] Creating label for order {order.increment_id}, service {request.Shipment.Service.Code}")

        response = await self._make_request(
            config,
            "POST",
            SHIPPING_PATH,
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
            message = ups_label_error_message(try_parse_json(response)) or f"HTTP {response.status_code}"
            logger.error(f"[UPS] Label creation failed for order {order.increment_id}: {message}")
            raise error_for_status(response, self.carrier_code, message)

        data = parse_json(response, self.carrier_code)
        results = parse_wire(UPSShipmentResponse.from_response, data, self.carrier_code).ShipmentResults
        if results is None or not results.PackageResults:
            raise StructuralParseError("UPS response missing ShipmentResults", carrier_code=self.carrier_code)

        package = results.PackageResults[0]
        tracking_number = package.TrackingNumber
        if not tracking_number:
            raise StructuralParseError("No tracking number in UPS response", carrier_code=self.carrier_code)
        image = package.label_image
        if not image:
            raise StructuralParseError("No label image in UPS response", carrier_code=self.carrier_code)
        try:
            label_bytes = base64.b64decode(image)
        except (binascii.Error, ValueError):
            raise StructuralParseError("UPS label image is not valid base64", carrier_code=self.carrier_code)

        billed = package.BillingWeight.Weight if package.BillingWeight else None
        logger.info(f"[UPS] Label created for order {order.increment_id}: {tracking_number}")
        return Label(
            carrier_code=self.carrier_code,
            tracking_number=tracking_number,
            label_bytes=label_bytes,
            label_format=request.LabelSpecification.LabelImageFormat.Code or "GIF",
            service_code=request.Shipment.Service.Code,
            postage=results.postage,
            zone=results.zone,
            weight=billed,
            shipment_id=results.ShipmentIdentificationNumber or tracking_number,
            raw_response=data,
        )

    # ==================== Void ====================

    async def void_label(self, identifier: str, store_id: Optional[int] = None) -> None:
        """
        Void a shipment by shipment identification number.

        The tracking number is accepted when the shipment id was not kept;
        for single-package shipments UPS uses the same value.
        """
        config = self.config_for(store_id)
        response = await self._make_request(
            config,
            "DELETE",
            f"{VOID_PATH}/{identifier}",
            retry_on_auth=False,
        )
        if response.status_code in AUTH_FAILURE_STATUSES:
            raise AuthenticationError(AUTH_FAILED_MESSAGE, carrier_code=self.carrier_code)
        if response.status_code != 200:
            message = ups_label_error_message(try_parse_json(response)) or f"HTTP {response.status_code}"
            raise error_for_status(response, self.carrier_code, message)

        data = try_parse_json(response) or {}
        status = ((data.get("VoidShipmentResponse") or {}).get("SummaryResult") or {}).get("Status") or {}
        if status.get("Code") and str(status["Code"]) != "1":
            raise CarrierRequestError(
                status.get("Description") or "UPS void was not accepted",
                status_code=response.status_code,
                carrier_code=self.carrier_code,
            )
        logger.info(f"[UPS] Voided shipment {identifier}")

    # ==================== Credentials ====================

    async def test_credentials(self, store_id: Optional[int] = None) -> Dict[str, Any]:
        """Force a fresh token exchange and report the outcome without raising."""
        config = self.config_for(store_id)
        scope = self._scope(config)
        await self.token_store.invalidate(self.carrier_code, scope)
        try:
            await self.token_store.get_token(self.carrier_code, scope, self._exchange(config))
        except ParcelGateError as e:
            return {"success": False, "message": e.message, "environment": config.environment}
        return {
            "success": True,
            "message": "Successfully authenticated with UPS API",
            "environment": config.environment,
        }
