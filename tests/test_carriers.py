"""
Tests for the UPS, FedEx and USPS clients against mocked carrier APIs.
"""
import base64
import gzip
import json
import zlib
from datetime import datetime
from typing import Any, Dict, List

import httpx
import pytest

from parcelgate.core.exceptions import (
    AuthenticationError,
    CarrierRequestError,
    ConfigurationError,
    StructuralParseError,
    TransientCarrierError,
)
from parcelgate.models.carrier import CarrierCode
from parcelgate.models.tracking_event import TrackingEventType
from parcelgate.modules.shipping.base import CarrierClient
from parcelgate.modules.shipping.carriers.fedex import FedExClient, fedex_transit_days
from parcelgate.modules.shipping.carriers.ups import UPSClient
from parcelgate.modules.shipping.carriers.usps import USPSClient
from parcelgate.modules.shipping.http import decode_body, error_for_status
from parcelgate.modules.shipping.token_store import TokenStore
from parcelgate.modules.shipping.transit import TransitSource
from parcelgate.schemas.shipping import Address, OrderItem, RateRequest, ShipmentOrder
from parcelgate.services.rate_service import RateQuoteService

from tests.conftest import StaticConfigProvider, make_config

# Monday
NOW = datetime(2024, 3, 4, 10, 0)

LABEL_BYTES = b"%PDF-1.4 test label"
LABEL_B64 = base64.b64encode(LABEL_BYTES).decode()


class FakeCarrierAPI:
    """MockTransport handler answering by URL path; the last reply of a path repeats."""

    def __init__(self, routes: Dict[str, Any]):
        self.routes = {
            path: list(replies) if isinstance(replies, list) else [replies]
            for path, replies in routes.items()
        }
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        replies = self.routes[request.url.path]
        status, body = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(body, bytes):
            return httpx.Response(status, content=body)
        return httpx.Response(status, json=body)

    def calls(self, path: str) -> List[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]


def token(value: str = "tok-1") -> tuple:
    return 200, {"access_token": value, "expires_in": 3600}


def build_client(client_cls, carrier_code: CarrierCode, api: FakeCarrierAPI, cache, clock, **overrides):
    config = make_config(carrier_code, **overrides)
    return client_cls(
        config_provider=StaticConfigProvider({carrier_code: config}),
        token_store=TokenStore(cache, clock=clock),
        quote_service=RateQuoteService(cache, clock=clock),
        http_transport=httpx.MockTransport(api),
        now=lambda: NOW,
    )


def rate_request(**overrides) -> RateRequest:
    values = {"dest_country": "US", "dest_postcode": "10001", "dest_region": "NY", "weight": 2.0}
    values.update(overrides)
    return RateRequest(**values)


def order(shipping_method: str, **overrides) -> ShipmentOrder:
    values = {
        "order_id": 1,
        "increment_id": "100000123",
        "shipping_method": shipping_method,
        "shipping_address": Address(
            first_name="Jane",
            last_name="Doe",
            street=["1 Main St", "Apt 2"],
            city="New York",
            region_code="NY",
            postal_code="10001",
            country_code="US",
            phone="212-555-0100",
        ),
        "items": [OrderItem(sku="COMIC-1", name="Comic", qty=2, weight=0.75, price=10.0)],
        "grand_total": 20.0,
        "customer_email": "jane@example.com",
    }
    values.update(overrides)
    return ShipmentOrder(**values)


UPS_OAUTH = "/security/v1/oauth/token"
UPS_RATE = "/api/rating/v2205/Shop"
UPS_TRANSIT = "/api/shipments/v1/transittimes"
UPS_SHIP = "/api/shipments/v2205/ship"

UPS_RATES = {
    "RateResponse": {
        "RatedShipment": [
            {
                "Service": {"Code": "03"},
                "TotalCharges": {"MonetaryValue": "12.34"},
                "NegotiatedRateCharges": {"TotalCharge": {"MonetaryValue": "10.50"}},
            },
            {
                "Service": {"Code": "01"},
                "TotalCharges": {"MonetaryValue": "45.00"},
                "GuaranteedDelivery": {"BusinessDaysInTransit": "1", "DeliveryByTime": "10:30 A.M."},
            },
        ],
    },
}


class TestUPSClient:
    """Test UPS rating, transit and labels."""

    def test_satisfies_contract(self, cache, clock):
        client = build_client(UPSClient, CarrierCode.UPS, FakeCarrierAPI({}), cache, clock)
        assert isinstance(client, CarrierClient)

    @pytest.mark.asyncio
    async def test_fetch_rates(self, cache, clock):
        """Negotiated price wins; guaranteed services get a day suffix and an estimate."""
        api = FakeCarrierAPI({UPS_OAUTH: token(), UPS_RATE: (200, UPS_RATES)})
        client = build_client(UPSClient, CarrierCode.UPS, api, cache, clock)

        result = await client.fetch_rates(rate_request())

        rates = {rate.method_code: rate for rate in result.rates}
        assert rates["03"].price == 10.5
        assert rates["03"].title == "Ground"
        assert rates["01"].title == "Next Day Air (1 day)"
        assert result.transit["01"].guaranteed is True
        assert result.transit["01"].delivery_date == "2024-03-05"
        assert result.transit["01"].source == TransitSource.GUARANTEED_DELIVERY
        assert "03" not in result.transit

        payload = json.loads(api.calls(UPS_RATE)[0].content)
        shipment = payload["RateRequest"]["Shipment"]
        assert shipment["Shipper"]["Address"]["PostalCode"] == "78701"
        assert shipment["ShipTo"]["Address"]["ResidentialAddressIndicator"] == ""
        assert shipment["Package"][0]["PackageWeight"]["Weight"] == "2.0"

    @pytest.mark.asyncio
    async def test_rate_401_retried_once_with_new_token(self, cache, clock):
        api = FakeCarrierAPI({
            UPS_OAUTH: [token("tok-1"), token("tok-2")],
            UPS_RATE: [(401, {"response": {"errors": [{"message": "Invalid token"}]}}), (200, UPS_RATES)],
        })
        client = build_client(UPSClient, CarrierCode.UPS, api, cache, clock)

        result = await client.fetch_rates(rate_request())

        assert len(result.rates) == 2
        rate_calls = api.calls(UPS_RATE)
        assert len(rate_calls) == 2
        assert rate_calls[0].headers["Authorization"] == "Bearer tok-1"
        assert rate_calls[1].headers["Authorization"] == "Bearer tok-2"

    @pytest.mark.asyncio
    async def test_rate_401_twice_raises(self, cache, clock):
        api = FakeCarrierAPI({
            UPS_OAUTH: [token("tok-1"), token("tok-2")],
            UPS_RATE: (401, {"response": {"errors": [{"message": "Invalid token"}]}}),
        })
        client = build_client(UPSClient, CarrierCode.UPS, api, cache, clock)

        with pytest.raises(AuthenticationError) as exc_info:
            await client.fetch_rates(rate_request())

        assert exc_info.value.message == "Invalid token"
        assert len(api.calls(UPS_RATE)) == 2

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, cache, clock):
        api = FakeCarrierAPI({UPS_OAUTH: token(), UPS_RATE: (503, b"Service Unavailable")})
        client = build_client(UPSClient, CarrierCode.UPS, api, cache, clock)

        with pytest.raises(TransientCarrierError):
            await client.fetch_rates(rate_request())

    @pytest.mark.asyncio
    async def test_services_without_prices(self, cache, clock):
        body = {"RateResponse": {"RatedShipment": {"Service": {"Code": "03"}}}}
        api = FakeCarrierAPI({UPS_OAUTH: token(), UPS_RATE: (200, body)})
        client = build_client(UPSClient, CarrierCode.UPS, api, cache, clock)

        with pytest.raises(StructuralParseError):
            await client.fetch_rates(rate_request())

    @pytest.mark.asyncio
    async def test_transit_api_fills_missing_methods(self, cache, clock):
        transit = {
            "emsResponse": {
                "services": [
                    {"serviceLevel": "GND", "businessTransitDays": "3", "deliveryDate": "20240307",
                     "deliveryDayOfWeek": "THU", "guaranteeIndicator": "0"},
                ],
            },
        }
        api = FakeCarrierAPI({UPS_OAUTH: token(), UPS_RATE: (200, UPS_RATES), UPS_TRANSIT: (200, transit)})
        client = build_client(UPSClient, CarrierCode.UPS, api, cache, clock, transit_enabled=True)

        result = await client.fetch_rates(rate_request())

        assert result.transit["03"].business_days == 3
        assert result.transit["03"].delivery_date == "2024-03-07"
        assert result.transit["03"].source == TransitSource.TRANSIT_API
        assert result.transit["01"].source == TransitSource.GUARANTEED_DELIVERY

    @pytest.mark.asyncio
    async def test_transit_failure_does_not_fail_quote(self, cache, clock):
        api = FakeCarrierAPI({UPS_OAUTH: token(), UPS_RATE: (200, UPS_RATES), UPS_TRANSIT: (500, b"error")})
        client = build_client(UPSClient, CarrierCode.UPS, api, cache, clock, transit_enabled=True)

        result = await client.fetch_rates(rate_request())

        assert len(result.rates) == 2
        assert "03" not in result.transit

    @pytest.mark.asyncio
    async def test_create_label(self, cache, clock):
        body = {
            "ShipmentResponse": {
                "ShipmentResults": {
                    "ShipmentIdentificationNumber": "1ZSHIP",
                    "ShipmentCharges": {"TotalCharges": {"MonetaryValue": "11.20"}},
                    "PackageResults": {
                        "TrackingNumber": "1Z999AA10123456784",
                        "ShippingLabel": {"GraphicImage": LABEL_B64},
                    },
                },
            },
        }
        api = FakeCarrierAPI({UPS_OAUTH: token(), UPS_SHIP: (200, body)})
        client = build_client(UPSClient, CarrierCode.UPS, api, cache, clock)

        label = await client.create_label(order("ups_03"))

        assert label.tracking_number == "1Z999AA10123456784"
        assert label.shipment_id == "1ZSHIP"
        assert label.label_bytes == LABEL_BYTES
        assert label.postage == 11.2
        shipment = json.loads(api.calls(UPS_SHIP)[0].content)["ShipmentRequest"]["Shipment"]
        assert shipment["Service"]["Code"] == "03"
        assert shipment["Package"][0]["PackageWeight"]["Weight"] == "1.5"

    @pytest.mark.asyncio
    async def test_label_401_not_retried(self, cache, clock):
        api = FakeCarrierAPI({UPS_OAUTH: [token("tok-1"), token("tok-2")], UPS_SHIP: (401, {})})
        client = build_client(UPSClient, CarrierCode.UPS, api, cache, clock)

        with pytest.raises(AuthenticationError):
            await client.create_label(order("ups_03"))

        assert len(api.calls(UPS_SHIP)) == 1
        # The token was evicted, so the next call exchanges again
        with pytest.raises(AuthenticationError):
            await client.create_label(order("ups_03"))
        assert len(api.calls(UPS_OAUTH)) == 2

    @pytest.mark.asyncio
    async def test_label_missing_tracking_number(self, cache, clock):
        body = {"ShipmentResponse": {"ShipmentResults": {"PackageResults": {"ShippingLabel": {"GraphicImage": LABEL_B64}}}}}
        api = FakeCarrierAPI({UPS_OAUTH: token(), UPS_SHIP: (200, body)})
        client = build_client(UPSClient, CarrierCode.UPS, api, cache, clock)

        with pytest.raises(StructuralParseError):
            await client.create_label(order("ups_03"))

    @pytest.mark.asyncio
    async def test_label_requires_account_number(self, cache, clock):
        client = build_client(UPSClient, CarrierCode.UPS, FakeCarrierAPI({}), cache, clock, account_number="")

        with pytest.raises(ConfigurationError):
            await client.create_label(order("ups_03"))

    @pytest.mark.asyncio
    async def test_void(self, cache, clock):
        body = {"VoidShipmentResponse": {"SummaryResult": {"Status": {"Code": "1", "Description": "Success"}}}}
        api = FakeCarrierAPI({UPS_OAUTH: token(), "/api/shipments/v2205/void/cancel/1ZSHIP": (200, body)})
        client = build_client(UPSClient, CarrierCode.UPS, api, cache, clock)

        await client.void_label("1ZSHIP")

        assert api.requests[-1].method == "DELETE"


FEDEX_OAUTH = "/oauth/token"
FEDEX_RATE = "/rate/v1/rates/quotes"
FEDEX_SHIP = "/ship/v1/shipments"
FEDEX_CANCEL = "/ship/v1/shipments/cancel"

FEDEX_RATES = {
    "output": {
        "rateReplyDetails": [
            {
                "serviceType": "FEDEX_GROUND",
                "serviceName": "FedEx Ground",
                "ratedShipmentDetails": [{"totalNetCharge": 11.2}],
                "operationalDetail": {"transitTime": "THREE_DAYS"},
            },
            {
                "serviceType": "PRIORITY_OVERNIGHT",
                "ratedShipmentDetails": [{"totalNetCharge": 0, "totalNetFedExCharge": 45.1}],
                "commit": {"commitTimestamp": "2024-03-05T10:30:00", "dateDetail": {"dayOfWeek": "TUE"}},
            },
        ],
    },
}


class TestFedExTransitDays:
    """Test FedEx transit value parsing."""

    def test_words(self):
        assert fedex_transit_days("THREE_DAYS") == 3
        assert fedex_transit_days("ONE_DAY") == 1

    def test_object(self):
        assert fedex_transit_days({"minimumTransitTime": "TWO_DAYS"}) == 2

    def test_numbers(self):
        assert fedex_transit_days(4) == 4
        assert fedex_transit_days("7 business days") == 7

    def test_unreadable_defaults(self):
        assert fedex_transit_days("UNKNOWN") == 5
        assert fedex_transit_days(None) == 5


class TestFedExClient:
    """Test FedEx rating, labels and cancel."""

    @pytest.mark.asyncio
    async def test_fetch_rates(self, cache, clock):
        api = FakeCarrierAPI({FEDEX_OAUTH: token(), FEDEX_RATE: (200, FEDEX_RATES)})
        client = build_client(FedExClient, CarrierCode.FEDEX, api, cache, clock)

        result = await client.fetch_rates(rate_request())

        rates = {rate.method_code: rate for rate in result.rates}
        assert rates["FEDEX_GROUND"].price == 11.2
        assert rates["PRIORITY_OVERNIGHT"].price == 45.1
        assert rates["PRIORITY_OVERNIGHT"].title == "FedEx Priority Overnight"
        assert result.transit["FEDEX_GROUND"].business_days == 3
        assert result.transit["PRIORITY_OVERNIGHT"].delivery_date == "2024-03-05"
        assert result.transit["PRIORITY_OVERNIGHT"].delivery_time == "10:30"

    @pytest.mark.asyncio
    async def test_gzip_body_without_header(self, cache, clock):
        """Test that a gzip body is decoded even without Content-Encoding."""
        compressed = gzip.compress(json.dumps(FEDEX_RATES).encode())
        api = FakeCarrierAPI({FEDEX_OAUTH: token(), FEDEX_RATE: (200, compressed)})
        client = build_client(FedExClient, CarrierCode.FEDEX, api, cache, clock)

        result = await client.fetch_rates(rate_request())

        assert len(result.rates) == 2

    @pytest.mark.asyncio
    async def test_rejected_request_keeps_carrier_text(self, cache, clock):
        body = {"errors": [{"code": "RECIPIENT.POSTALCODE.INVALID", "message": "Invalid postal code"}]}
        api = FakeCarrierAPI({FEDEX_OAUTH: token(), FEDEX_RATE: (400, body)})
        client = build_client(FedExClient, CarrierCode.FEDEX, api, cache, clock)

        with pytest.raises(CarrierRequestError) as exc_info:
            await client.fetch_rates(rate_request())

        assert exc_info.value.message == "RECIPIENT.POSTALCODE.INVALID: Invalid postal code"
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_create_label(self, cache, clock):
        body = {
            "output": {
                "transactionShipments": [{
                    "pieceResponses": [{
                        "trackingNumber": "794612345678",
                        "packageDocuments": [{"encodedLabel": LABEL_B64}],
                        "netCharge": 11.2,
                    }],
                }],
            },
        }
        api = FakeCarrierAPI({FEDEX_OAUTH: token(), FEDEX_SHIP: (200, body)})
        client = build_client(FedExClient, CarrierCode.FEDEX, api, cache, clock)

        label = await client.create_label(order("fedex_FEDEX_GROUND"))

        assert label.tracking_number == "794612345678"
        assert label.label_bytes == LABEL_BYTES
        assert label.postage == 11.2
        shipment = json.loads(api.calls(FEDEX_SHIP)[0].content)["requestedShipment"]
        assert shipment["serviceType"] == "FEDEX_GROUND"
        assert shipment["shipDatestamp"] == "2024-03-04"

    @pytest.mark.asyncio
    async def test_cancel(self, cache, clock):
        api = FakeCarrierAPI({FEDEX_OAUTH: token(), FEDEX_CANCEL: (200, {"output": {"cancelledShipment": True}})})
        client = build_client(FedExClient, CarrierCode.FEDEX, api, cache, clock)

        await client.void_label("794612345678")

        request = api.calls(FEDEX_CANCEL)[0]
        assert request.method == "PUT"
        assert json.loads(request.content)["trackingNumber"] == "794612345678"

    @pytest.mark.asyncio
    async def test_cancel_refused(self, cache, clock):
        body = {"output": {"cancelledShipment": False, "message": "Shipment already picked up"}}
        api = FakeCarrierAPI({FEDEX_OAUTH: token(), FEDEX_CANCEL: (200, body)})
        client = build_client(FedExClient, CarrierCode.FEDEX, api, cache, clock)

        with pytest.raises(CarrierRequestError) as exc_info:
            await client.void_label("794612345678")

        assert exc_info.value.message == "Shipment already picked up"


USPS_OAUTH = "/oauth2/v3/token"
USPS_PAYMENT = "/payments/v3/payment-authorization"
USPS_OPTIONS = "/shipments/v3/options/search"
USPS_LABEL = "/labels/v3/label"

USPS_LABEL_CONFIG = {
    "crid": "56982563",
    "mid": "904128936",
    "payment_account_type": "EPS",
    "payment_account_number": "1000405525",
}


class TestUSPSClient:
    """Test USPS options, labels and tracking."""

    @pytest.mark.asyncio
    async def test_fetch_rates(self, cache, clock):
        body = {
            "pricingOptions": [{
                "shippingOptions": [
                    {
                        "mailClass": "PRIORITY_MAIL",
                        "rateOptions": [{
                            "totalPrice": 9.85,
                            "commitment": {"name": "2 Days", "scheduleDeliveryDate": "2024-03-06"},
                        }],
                    },
                    {"mailClass": "USPS_GROUND_ADVANTAGE", "rateOptions": [{"totalPrice": 6.1}]},
                ],
            }],
        }
        api = FakeCarrierAPI({USPS_OAUTH: token(), USPS_OPTIONS: (200, body)})
        client = build_client(USPSClient, CarrierCode.USPS, api, cache, clock)

        result = await client.fetch_rates(rate_request(dest_postcode="10001-1234"))

        rates = {rate.method_code: rate for rate in result.rates}
        assert rates["PRIORITY_MAIL"].price == 9.85
        assert rates["PRIORITY_MAIL"].title == "Priority Mail"
        assert rates["USPS_GROUND_ADVANTAGE"].price == 6.1
        assert result.transit["PRIORITY_MAIL"].business_days == 2
        assert result.transit["PRIORITY_MAIL"].delivery_day == "Wednesday"

        payload = json.loads(api.calls(USPS_OPTIONS)[0].content)
        assert payload["destinationZIPCode"] == "10001"
        assert payload["packageDescription"]["mailingDate"] == "2024-03-04"

    @pytest.mark.asyncio
    async def test_create_label_uses_payment_token(self, cache, clock):
        body = {"trackingNumber": "9400111899223100000000", "labelImage": LABEL_B64, "postage": 8.5, "zone": "05"}
        api = FakeCarrierAPI({
            USPS_OAUTH: token(),
            USPS_PAYMENT: (200, {"paymentAuthorizationToken": "pay-1"}),
            USPS_LABEL: (200, body),
        })
        client = build_client(USPSClient, CarrierCode.USPS, api, cache, clock, **USPS_LABEL_CONFIG)

        label = await client.create_label(order("usps_PRIORITY_MAIL"))

        assert label.tracking_number == "9400111899223100000000"
        assert label.label_bytes == LABEL_BYTES
        assert label.postage == 8.5
        request = api.calls(USPS_LABEL)[0]
        assert request.headers["X-Payment-Authorization-Token"] == "pay-1"
        assert request.headers["Authorization"] == "Bearer tok-1"
        assert "labelImage" not in label.raw_response

    @pytest.mark.asyncio
    async def test_label_401_evicts_both_tokens(self, cache, clock):
        body = {"trackingNumber": "9400111899223100000000", "labelImage": LABEL_B64}
        api = FakeCarrierAPI({
            USPS_OAUTH: [token("tok-1"), token("tok-2")],
            USPS_PAYMENT: [(200, {"paymentAuthorizationToken": "pay-1"}), (200, {"paymentAuthorizationToken": "pay-2"})],
            USPS_LABEL: [(401, {"error": {"message": "Unauthorized"}}), (200, body)],
        })
        client = build_client(USPSClient, CarrierCode.USPS, api, cache, clock, **USPS_LABEL_CONFIG)

        with pytest.raises(AuthenticationError):
            await client.create_label(order("usps_PRIORITY_MAIL"))
        assert len(api.calls(USPS_LABEL)) == 1

        await client.create_label(order("usps_PRIORITY_MAIL"))

        assert len(api.calls(USPS_OAUTH)) == 2
        assert len(api.calls(USPS_PAYMENT)) == 2
        assert api.calls(USPS_LABEL)[1].headers["X-Payment-Authorization-Token"] == "pay-2"

    @pytest.mark.asyncio
    async def test_rate_401_keeps_payment_token(self, cache, clock):
        """A rejected bearer token on rating leaves the payment authorization cached."""
        label_body = {"trackingNumber": "9400111899223100000000", "labelImage": LABEL_B64}
        options_body = {"pricingOptions": [{"shippingOptions": [
            {"mailClass": "USPS_GROUND_ADVANTAGE", "rateOptions": [{"totalPrice": 6.1}]},
        ]}]}
        api = FakeCarrierAPI({
            USPS_OAUTH: [token("tok-1"), token("tok-2")],
            USPS_PAYMENT: [(200, {"paymentAuthorizationToken": "pay-1"}), (200, {"paymentAuthorizationToken": "pay-2"})],
            USPS_OPTIONS: [(401, {"error": {"message": "Unauthorized"}}), (200, options_body)],
            USPS_LABEL: (200, label_body),
        })
        client = build_client(USPSClient, CarrierCode.USPS, api, cache, clock, **USPS_LABEL_CONFIG)

        await client.create_label(order("usps_PRIORITY_MAIL"))
        await client.fetch_rates(rate_request())
        await client.create_label(order("usps_PRIORITY_MAIL"))

        assert len(api.calls(USPS_PAYMENT)) == 1
        second_label = api.calls(USPS_LABEL)[1]
        assert second_label.headers["Authorization"] == "Bearer tok-2"
        assert second_label.headers["X-Payment-Authorization-Token"] == "pay-1"

    @pytest.mark.asyncio
    async def test_label_requires_payment_account(self, cache, clock):
        api = FakeCarrierAPI({USPS_OAUTH: token()})
        client = build_client(USPSClient, CarrierCode.USPS, api, cache, clock)

        with pytest.raises(ConfigurationError):
            await client.create_label(order("usps_PRIORITY_MAIL"))

    @pytest.mark.asyncio
    async def test_track(self, cache, clock):
        body = {
            "trackingNumber": "9400111899223100000000",
            "statusSummary": "Your item was delivered in or at the mailbox",
            "actualDeliveryDate": "2024-03-06T14:00:00Z",
            "trackingEvents": [
                {"eventType": "Delivered, In/At Mailbox", "eventCode": "01",
                 "eventTimestamp": "2024-03-06T14:00:00Z", "eventCity": "NEW YORK", "eventState": "NY"},
                {"eventType": "Arrived at USPS Regional Facility", "eventTimestamp": "2024-03-05T08:00:00Z"},
                {"eventType": "Tracking event without a time"},
            ],
        }
        api = FakeCarrierAPI({USPS_OAUTH: token(), "/tracking/v3/tracking/9400111899223100000000": (200, body)})
        client = build_client(USPSClient, CarrierCode.USPS, api, cache, clock)

        summary = await client.track("9400111899223100000000")

        assert summary.delivered is True
        assert len(summary.events) == 2
        assert summary.events[0].event_type == TrackingEventType.DELIVERED
        assert summary.events[0].location == "NEW YORK, NY"
        assert summary.events[1].event_code == "ARRIVED_AT_USPS_REGIONAL_FACILITY"
        assert summary.events[1].event_type == TrackingEventType.IN_TRANSIT


class TestHttpHelpers:
    """Test body decoding and status mapping."""

    def test_decode_body_variants(self):
        raw = b'{"ok": true}'
        assert decode_body(raw) == raw
        assert decode_body(gzip.compress(raw)) == raw
        assert decode_body(zlib.compress(raw)) == raw
        deflater = zlib.compressobj(wbits=-zlib.MAX_WBITS)
        assert decode_body(deflater.compress(raw) + deflater.flush()) == raw
        assert decode_body(b"") == b""

    def test_status_mapping(self):
        def error(status):
            return error_for_status(httpx.Response(status), "ups", "message")

        assert isinstance(error(401), AuthenticationError)
        assert isinstance(error(403), AuthenticationError)
        assert isinstance(error(429), TransientCarrierError)
        assert isinstance(error(502), TransientCarrierError)
        assert isinstance(error(400), CarrierRequestError)
        assert error(422).status_code == 422
