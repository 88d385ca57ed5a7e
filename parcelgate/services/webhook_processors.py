"""
Carrier webhook processors

One processor per carrier: signature validation over the raw body, JSON
decoding, and normalization into CanonicalEvent. Signature schemes:

- UPS Track Alert: `credential` header equal to the subscription security
  token
- FedEx: `fedex-signature` header, hex HMAC-SHA256 of the raw body
- USPS: `x-usps-signature` header, base64 HMAC-SHA256 of the raw body

A processor without a configured secret rejects every request.
"""
import base64
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from parcelgate.core.config import CarrierConfig, CarrierConfigProvider, SettingsCarrierConfigProvider
from parcelgate.core.exceptions import PayloadError, UnknownCarrierError
from parcelgate.models.carrier import CarrierCode
from parcelgate.models.tracking_event import TrackingEventType
from parcelgate.modules.shipping.carriers.usps import usps_canonical_event
from parcelgate.modules.shipping.events import CanonicalEvent, classify_description, parse_timestamp
from parcelgate.schemas.fedex import FedExScanEvent, FedExTrackResult
from parcelgate.schemas.ups import UPSTrackAlertEvent
from parcelgate.schemas.usps import USPSTrackingEvent

logger = logging.getLogger(__name__)


class WebhookProcessor(Protocol):
    carrier_code: str

    def is_enabled(self) -> bool:
        ...

    def security_token(self) -> str:
        ...

    def validate_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """Headers are matched case-insensitively."""
        ...

    def parse_payload(self, raw_body: bytes) -> Any:
        """Decode the body. Raises PayloadError."""
        ...

    def process(self, payload: Any) -> List[CanonicalEvent]:
        """Normalize a decoded payload; malformed events are skipped individually."""
        ...


def _header(headers: Mapping[str, str], name: str) -> str:
    for key, value in headers.items():
        if key.lower() == name:
            return value or ""
    return ""


def hmac_sha256(secret: str, raw_body: bytes) -> bytes:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()


def _as_items(payload: Any, list_key: str) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get(list_key), list):
        return payload[list_key]
    return [payload]


class BaseWebhookProcessor:
    """
    Configuration and JSON decoding shared by the carrier processors.

    Subclasses set carrier_code and implement validate_signature and
    _normalize (one raw event -> CanonicalEvent or None).
    """

    carrier_code: str = ""

    def __init__(self, config_provider: Optional[CarrierConfigProvider] = None):
        self.config_provider = config_provider or SettingsCarrierConfigProvider()

    @property
    def config(self) -> CarrierConfig:
        return self.config_provider.get(CarrierCode(self.carrier_code))

    def is_enabled(self) -> bool:
        return self.config.webhook_enabled

    def security_token(self) -> str:
        return self.config.webhook_secret

    def parse_payload(self, raw_body: bytes) -> Any:
        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PayloadError(
                f"Invalid {self.carrier_code.upper()} webhook payload: {e}",
                details={"carrier": self.carrier_code},
            )
        if not isinstance(payload, (dict, list)):
            raise PayloadError(
                f"Invalid {self.carrier_code.upper()} webhook payload: expected an object or a list",
                details={"carrier": self.carrier_code},
            )
        return payload

    def _raw_events(self, payload: Any) -> Iterable[Any]:
        raise NotImplementedError

    def _normalize(self, raw_event: Any) -> Optional[CanonicalEvent]:
        raise NotImplementedError

    def process(self, payload: Any) -> List[CanonicalEvent]:
        events: List[CanonicalEvent] = []
        for raw_event in self._raw_events(payload):
            try:
                event = self._normalize(raw_event)
            except (PydanticValidationError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"[WEBHOOK] Skipping malformed {self.carrier_code.upper()} event: {e}")
                continue
            if event is not None:
                events.append(event)
        return events


class UPSWebhookProcessor(BaseWebhookProcessor):
    """UPS Track Alert."""

    carrier_code = CarrierCode.UPS.value

    TYPE_MAP = {
        "M": TrackingEventType.LABEL_CREATED,
        "P": TrackingEventType.PICKED_UP,
        "D": TrackingEventType.DELIVERED,
        "X": TrackingEventType.EXCEPTION,
    }

    def validate_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        token = self.security_token()
        credential = _header(headers, "credential")
        if not token or not credential:
            return False
        return hmac.compare_digest(credential.encode(), token.encode())

    def _raw_events(self, payload: Any) -> Iterable[Any]:
        return _as_items(payload, "events")

    def _normalize(self, raw_event: Any) -> Optional[CanonicalEvent]:
        alert = UPSTrackAlertEvent.model_validate(raw_event)
        timestamp = (
            parse_timestamp(alert.gmtActivityDate, alert.gmtActivityTime)
            or parse_timestamp(alert.localActivityDate, alert.localActivityTime)
        )
        if timestamp is None:
            raise ValueError(f"no activity date for {alert.trackingNumber}")

        status = alert.activityStatus
        event_type = self.TYPE_MAP.get((status.type or "").upper())
        if event_type is None:
            event_type = classify_description(status.description)
            if event_type == TrackingEventType.UNKNOWN and (status.type or "").upper() == "I":
                event_type = TrackingEventType.IN_TRANSIT

        location = alert.activityLocation
        return CanonicalEvent(
            tracking_number=alert.trackingNumber,
            carrier_code=self.carrier_code,
            event_code=status.code or status.type or "UNKNOWN",
            event_type=event_type,
            event_timestamp=timestamp,
            description=status.description or "",
            city=location.city if location else None,
            state=location.stateProvince if location else None,
            country=location.country if location else None,
            postal_code=location.postalCode if location else None,
            signature=alert.signedForByName,
            image_url=alert.deliveryPhotoUrl,
            raw_payload=raw_event,
        )


class FedExWebhookProcessor(BaseWebhookProcessor):
    """FedEx tracking webhooks (Track API result shape)."""

    carrier_code = CarrierCode.FEDEX.value

    STATUS_MAP = {
        "OC": TrackingEventType.LABEL_CREATED,
        "PU": TrackingEventType.PICKED_UP,
        "OD": TrackingEventType.OUT_FOR_DELIVERY,
        "DL": TrackingEventType.DELIVERED,
        "DE": TrackingEventType.EXCEPTION,
        "SE": TrackingEventType.EXCEPTION,
        "CA": TrackingEventType.CANCELLED,
        "IT": TrackingEventType.IN_TRANSIT,
        "AR": TrackingEventType.IN_TRANSIT,
        "DP": TrackingEventType.IN_TRANSIT,
        "AF": TrackingEventType.IN_TRANSIT,
    }

    def validate_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        secret = self.security_token()
        signature = _header(headers, "fedex-signature").strip().lower()
        if not secret or not signature:
            return False
        return hmac.compare_digest(signature, hmac_sha256(secret, raw_body).hex())

    def _raw_events(self, payload: Any) -> Iterable[Any]:
        results: List[Dict[str, Any]] = []
        if isinstance(payload, dict) and isinstance(payload.get("output"), dict):
            for complete in payload["output"].get("completeTrackResults") or []:
                if not isinstance(complete, dict):
                    continue
                for track_result in complete.get("trackResults") or []:
                    if isinstance(track_result, dict):
                        results.append({"trackingNumber": complete.get("trackingNumber"), **track_result})
        else:
            results = _as_items(payload, "trackResults")

        for result in results:
            scan_events = result.get("scanEvents") if isinstance(result, dict) else None
            for scan_event in scan_events or []:
                yield result, scan_event

    def _normalize(self, raw_event: Any) -> Optional[CanonicalEvent]:
        result_data, scan_data = raw_event
        result = FedExTrackResult.model_validate({k: v for k, v in result_data.items() if k != "scanEvents"})
        scan = FedExScanEvent.model_validate(scan_data)
        if not result.trackingNumber:
            raise ValueError("missing trackingNumber")
        timestamp = parse_timestamp(scan.date)
        if timestamp is None:
            raise ValueError(f"no scan date for {result.trackingNumber}")

        code = (scan.derivedStatusCode or scan.eventType or "").upper()
        event_type = self.STATUS_MAP.get(code) or classify_description(scan.eventDescription)
        delivery = result.deliveryDetails if event_type == TrackingEventType.DELIVERED else None
        location = scan.scanLocation
        return CanonicalEvent(
            tracking_number=result.trackingNumber,
            carrier_code=self.carrier_code,
            event_code=scan.eventType or code or "UNKNOWN",
            event_type=event_type,
            event_timestamp=timestamp,
            description=scan.eventDescription or "",
            city=location.city if location else None,
            state=location.stateOrProvinceCode if location else None,
            country=location.countryCode if location else None,
            postal_code=location.postalCode if location else None,
            signature=delivery.receivedByName if delivery else None,
            image_url=delivery.signatureImageUrl if delivery else None,
            raw_payload=scan_data,
        )


class USPSWebhookProcessor(BaseWebhookProcessor):
    """USPS tracking subscription callbacks (Tracking v3 shape)."""

    carrier_code = CarrierCode.USPS.value

    def validate_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        secret = self.security_token()
        signature = _header(headers, "x-usps-signature").strip()
        if not secret or not signature:
            return False
        expected = base64.b64encode(hmac_sha256(secret, raw_body)).decode()
        return hmac.compare_digest(signature, expected)

    def _raw_events(self, payload: Any) -> Iterable[Any]:
        for item in _as_items(payload, "trackingNumbers"):
            if not isinstance(item, dict):
                yield "", item
                continue
            tracking_number = str(item.get("trackingNumber") or "")
            for event in item.get("trackingEvents") or []:
                yield tracking_number, event

    def _normalize(self, raw_event: Any) -> Optional[CanonicalEvent]:
        tracking_number, event_data = raw_event
        if not tracking_number:
            raise ValueError("missing trackingNumber")
        event = usps_canonical_event(tracking_number, USPSTrackingEvent.model_validate(event_data))
        if event is None:
            raise ValueError(f"no event timestamp for {tracking_number}")
        return event


class ProcessorPool:
    """Webhook processors by carrier code."""

    def __init__(self, processors: Iterable[WebhookProcessor]):
        self._processors: Dict[str, WebhookProcessor] = {p.carrier_code: p for p in processors}

    @classmethod
    def default(cls, config_provider: Optional[CarrierConfigProvider] = None) -> "ProcessorPool":
        provider = config_provider or SettingsCarrierConfigProvider()
        return cls([
            UPSWebhookProcessor(provider),
            FedExWebhookProcessor(provider),
            USPSWebhookProcessor(provider),
        ])

    def get(self, carrier_code: str) -> WebhookProcessor:
        processor = self._processors.get(carrier_code)
        if processor is None:
            raise UnknownCarrierError(
                "Unknown carrier",
                details={"carrier": carrier_code},
            )
        return processor

    def has(self, carrier_code: str) -> bool:
        return carrier_code in self._processors

    def carrier_codes(self) -> List[str]:
        return list(self._processors.keys())

    def enabled(self) -> List[WebhookProcessor]:
        return [p for p in self._processors.values() if p.is_enabled()]
