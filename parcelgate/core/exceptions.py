"""
ParcelGate Exception Hierarchy

Structured exception classes for the carrier integration boundary.
All exceptions include code, message, and details for audit trail and
debugging. Carrier-supplied error text is carried verbatim in `message`.

Exception Hierarchy:
    ParcelGateError
    ├── ConfigurationError
    ├── ValidationError
    ├── CarrierError
    │   ├── AuthenticationError
    │   ├── TransientCarrierError
    │   ├── CarrierRequestError
    │   └── StructuralParseError
    └── WebhookError
        ├── UnknownCarrierError
        ├── CarrierDisabledError
        ├── SignatureError
        └── PayloadError

A duplicate webhook event is NOT an exception: repositories report it as
SaveOutcome.DUPLICATE.
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class ParcelGateError(Exception):
    """
    Base exception for all ParcelGate errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "PARCELGATE_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ConfigurationError(ParcelGateError):
    """Missing credentials, shipper address or account data. Never retried."""
    default_code = "CONFIGURATION_ERROR"
    default_severity = "P1"


class ValidationError(ParcelGateError):
    """Bad or missing input, rejected before any work is attempted."""
    default_code = "VALIDATION_ERROR"
    default_severity = "P3"


# =============================================================================
# CARRIER ERRORS
# =============================================================================

class CarrierError(ParcelGateError):
    """Base exception for carrier API failures."""
    default_code = "CARRIER_ERROR"
    default_severity = "P2"

    def __init__(self, message: str, carrier_code: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if carrier_code:
            details.setdefault("carrier", carrier_code)
        super().__init__(message, details=details, **kwargs)
        self.carrier_code = carrier_code


class AuthenticationError(CarrierError):
    """401/403 from a carrier or a failed OAuth exchange."""
    default_code = "CARRIER_AUTH_FAILED"
    default_severity = "P1"


class TransientCarrierError(CarrierError):
    """5xx, timeout or connection failure. Quotes may fall back to stale cache."""
    default_code = "CARRIER_UNAVAILABLE"
    default_severity = "P2"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.details.setdefault("status_code", status_code)


class CarrierRequestError(CarrierError):
    """Carrier rejected the request (4xx other than auth)."""
    default_code = "CARRIER_REJECTED"
    default_severity = "P2"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.details.setdefault("status_code", status_code)


class StructuralParseError(CarrierError):
    """Carrier response is missing fields we refuse to guess (tracking number, price, label)."""
    default_code = "CARRIER_RESPONSE_INVALID"
    default_severity = "P1"


# =============================================================================
# WEBHOOK ERRORS
# =============================================================================

class WebhookError(ParcelGateError):
    """Base exception for inbound webhook rejections."""
    default_code = "WEBHOOK_ERROR"
    default_severity = "P2"
    status_code: int = 500


class UnknownCarrierError(WebhookError):
    default_code = "WEBHOOK_UNKNOWN_CARRIER"
    default_severity = "P3"
    status_code = 404


class CarrierDisabledError(WebhookError):
    default_code = "WEBHOOK_CARRIER_DISABLED"
    default_severity = "P3"
    status_code = 503


class SignatureError(WebhookError):
    default_code = "WEBHOOK_INVALID_SIGNATURE"
    default_severity = "P1"
    status_code = 401


class PayloadError(WebhookError):
    """Webhook body could not be decoded. Distinct from authentication failures."""
    default_code = "WEBHOOK_INVALID_PAYLOAD"
    default_severity = "P2"
    status_code = 400
