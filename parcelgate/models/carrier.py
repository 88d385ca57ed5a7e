"""
Carrier codes and carrier-level reference data.

Service code tables live here so rate parsing, label requests and webhook
processing agree on method names without importing each other.
"""
import enum
from typing import Dict


class CarrierCode(str, enum.Enum):
    """
    Supported shipping carriers.

    Values double as the carrier parameter of the webhook endpoint and the
    carrier part of shipping method codes (e.g. "ups_03").
    """
    UPS = "ups"
    FEDEX = "fedex"
    USPS = "usps"

    @classmethod
    def from_value(cls, value: str) -> "CarrierCode":
        """Parse a carrier code, tolerating case and legacy 'v3' suffixes."""
        normalized = (value or "").strip().lower()
        if normalized.endswith("v3"):
            normalized = normalized[:-2]
        return cls(normalized)


CARRIER_NAMES: Dict[CarrierCode, str] = {
    CarrierCode.UPS: "UPS",
    CarrierCode.FEDEX: "FedEx",
    CarrierCode.USPS: "USPS",
}

TRACKING_URLS: Dict[CarrierCode, str] = {
    CarrierCode.FEDEX: "https://www.fedex.com/fedextrack/?trknbr={tracking_number}",
    CarrierCode.UPS: "https://www.ups.com/track?tracknum={tracking_number}",
    CarrierCode.USPS: "https://tools.usps.com/go/TrackConfirmAction?tLabels={tracking_number}",
}


def carrier_name(carrier_code: str) -> str:
    """Display name for a carrier code; unknown codes are upper-cased."""
    try:
        return CARRIER_NAMES[CarrierCode.from_value(carrier_code)]
    except ValueError:
        return (carrier_code or "").upper()


def tracking_url(carrier_code: str, tracking_number: str) -> str:
    """Public tracking page for a shipment, empty for unknown carriers."""
    try:
        template = TRACKING_URLS[CarrierCode.from_value(carrier_code)]
    except ValueError:
        return ""
    return template.format(tracking_number=tracking_number)


UPS_SERVICE_CODES: Dict[str, str] = {
    # Domestic US
    "01": "Next Day Air",
    "02": "2nd Day Air",
    "03": "Ground",
    "12": "3 Day Select",
    "13": "Next Day Air Saver",
    "14": "Next Day Air Early",
    "59": "2nd Day Air A.M.",
    "65": "Saver",
    # SurePost
    "93": "SurePost Less Than 1 lb",
    "94": "SurePost 1 lb or Greater",
    "95": "SurePost BPM",
    "96": "SurePost Media Mail",
    # International
    "07": "Worldwide Express",
    "08": "Worldwide Expedited",
    "11": "Standard",
    "54": "Worldwide Express Plus",
}

FEDEX_SERVICE_TYPES: Dict[str, str] = {
    "FIRST_OVERNIGHT": "FedEx First Overnight",
    "PRIORITY_OVERNIGHT": "FedEx Priority Overnight",
    "STANDARD_OVERNIGHT": "FedEx Standard Overnight",
    "FEDEX_2_DAY_AM": "FedEx 2Day A.M.",
    "FEDEX_2_DAY": "FedEx 2Day",
    "FEDEX_EXPRESS_SAVER": "FedEx Express Saver",
    "FEDEX_GROUND": "FedEx Ground",
    "GROUND_HOME_DELIVERY": "FedEx Home Delivery",
    "SMART_POST": "FedEx Ground Economy",
    "INTERNATIONAL_FIRST": "FedEx International First",
    "INTERNATIONAL_PRIORITY": "FedEx International Priority",
    "INTERNATIONAL_ECONOMY": "FedEx International Economy",
    "FEDEX_INTERNATIONAL_PRIORITY_EXPRESS": "FedEx International Priority Express",
    "FEDEX_FREIGHT_PRIORITY": "FedEx Freight Priority",
    "FEDEX_FREIGHT_ECONOMY": "FedEx Freight Economy",
}

USPS_MAIL_CLASSES: Dict[str, str] = {
    "USPS_GROUND_ADVANTAGE": "USPS Ground Advantage",
    "PRIORITY_MAIL": "Priority Mail",
    "PRIORITY_MAIL_EXPRESS": "Priority Mail Express",
    "PARCEL_SELECT": "Parcel Select",
    "PARCEL_SELECT_LIGHTWEIGHT": "Parcel Select Lightweight",
    "MEDIA_MAIL": "Media Mail",
    "LIBRARY_MAIL": "Library Mail",
    "BOUND_PRINTED_MATTER": "Bound Printed Matter",
    "FIRST_CLASS_MAIL": "First-Class Mail",
    "PRIORITY_MAIL_INTERNATIONAL": "Priority Mail International",
    "PRIORITY_MAIL_EXPRESS_INTERNATIONAL": "Priority Mail Express International",
    "FIRST_CLASS_PACKAGE_INTERNATIONAL_SERVICE": "First-Class Package International Service",
    "GLOBAL_EXPRESS_GUARANTEED": "Global Express Guaranteed",
}
