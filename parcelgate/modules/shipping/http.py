"""
HTTP helpers shared by carrier clients.

Carriers sometimes return compressed bodies without a Content-Encoding
header, so bodies are sniffed by magic bytes instead of trusting headers.
"""
import json
import logging
import zlib
import gzip
from typing import Any, Callable, Dict, Optional, TypeVar

import httpx
from pydantic import ValidationError as PydanticValidationError

from parcelgate.core.exceptions import (
    AuthenticationError,
    CarrierRequestError,
    StructuralParseError,
    TransientCarrierError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
LABEL_TIMEOUT = 45.0

M = TypeVar("M")


def decode_body(content: bytes) -> bytes:
    """Decompress gzip (1f 8b) or zlib (78 ..) payloads, else try raw deflate."""
    if not content:
        return content
    if content[:2] == b"\x1f\x8b":
        try:
            return gzip.decompress(content)
        except (OSError, EOFError) as e:
            logger.warning(f"[HTTP] gzip magic bytes but decompression failed: {e}")
            return content
    if content[:1] == b"\x78":
        try:
            return zlib.decompress(content)
        except zlib.error:
            pass
    if content[:1] in (b"{", b"["):
        return content
    try:
        return zlib.decompress(content, -zlib.MAX_WBITS)
    except zlib.error:
        return content


def parse_json(response: httpx.Response, carrier_code: str) -> Dict[str, Any]:
    """Decode a JSON object body, raising StructuralParseError when it isn't one."""
    raw = decode_body(response.content)
    try:
        data = json.loads(raw) if raw else {}
    except ValueError as e:
        raise StructuralParseError(
            f"Invalid JSON response from {carrier_code.upper()}: {e}",
            carrier_code=carrier_code,
            details={"status": response.status_code, "body": raw[:500].decode("utf-8", "replace")},
        )
    if not isinstance(data, dict):
        raise StructuralParseError(
            f"Unexpected {carrier_code.upper()} response shape",
            carrier_code=carrier_code,
        )
    return data


def try_parse_json(response: httpx.Response) -> Optional[Dict[str, Any]]:
    raw = decode_body(response.content)
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def body_excerpt(response: httpx.Response, limit: int = 500) -> str:
    return decode_body(response.content)[:limit].decode("utf-8", "replace")


def error_for_status(
    response: httpx.Response,
    carrier_code: str,
    message: str,
) -> Exception:
    """Map an HTTP failure to the error taxonomy, keeping the carrier's text."""
    status = response.status_code
    details = {"status": status}
    if status in (401, 403):
        return AuthenticationError(message, carrier_code=carrier_code, details=details)
    if status >= 500 or status == 429:
        return TransientCarrierError(message, status_code=status, carrier_code=carrier_code, details=details)
    return CarrierRequestError(message, status_code=status, carrier_code=carrier_code, details=details)


def transport_error(exc: httpx.HTTPError, carrier_code: str) -> TransientCarrierError:
    """Timeouts and connection failures."""
    kind = "timeout" if isinstance(exc, httpx.TimeoutException) else "network error"
    logger.error(f"[{carrier_code.upper()}] Request failed ({kind}): {exc}")
    return TransientCarrierError(
        f"{carrier_code.upper()} {kind}: {exc}",
        carrier_code=carrier_code,
    )


def parse_wire(parser: Callable[[Dict[str, Any]], M], data: Dict[str, Any], carrier_code: str) -> M:
    """Validate a decoded body into a wire struct, or raise StructuralParseError."""
    try:
        return parser(data)
    except PydanticValidationError as e:
        raise StructuralParseError(
            f"Unexpected {carrier_code.upper()} response: {e.error_count()} invalid field(s)",
            carrier_code=carrier_code,
            details={"errors": str(e)[:500]},
        )
