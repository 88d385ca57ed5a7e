"""Postcode normalization so logically equal destinations share one cache key."""
import re

_NON_DIGITS = re.compile(r"\D")
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def normalize_postcode(postcode: str, country_code: str) -> str:
    """
    US: digits only, first five (ZIP+4 collapses to ZIP).
    CA: alphanumerics only, upper-cased ("k1a 0b1" -> "K1A0B1").
    Anything else is returned unchanged.
    """
    postcode = postcode or ""
    country = (country_code or "").upper()
    if country == "US":
        return _NON_DIGITS.sub("", postcode)[:5]
    if country == "CA":
        return _NON_ALNUM.sub("", postcode).upper()
    return postcode


def format_us_zip(postcode: str) -> str:
    """Five-digit ZIP for carrier payloads that reject ZIP+4."""
    return _NON_DIGITS.sub("", postcode or "")[:5]


def format_zip_plus4(postcode: str) -> str:
    """ZIP for label addresses: ZIP+4 as XXXXX-XXXX, otherwise the first five digits."""
    cleaned = re.sub(r"[^0-9-]", "", postcode or "")
    if "-" in cleaned:
        return cleaned
    if len(cleaned) == 9:
        return f"{cleaned[:5]}-{cleaned[5:]}"
    return cleaned[:5]
