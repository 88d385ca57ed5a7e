"""
Shipping Schemas

Pydantic models for the normalized inputs the core accepts from a host:
rate requests, orders to ship and package overrides. Validated at
construction; carrier clients never see unvalidated dictionaries.
"""
import re
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from parcelgate.core.config import ShipperAddress
from parcelgate.models.carrier import CarrierCode


# ==================== Address Schemas ====================


class Address(BaseModel):
    """Recipient address of an order."""
    first_name: str = ""
    last_name: str = ""
    company: Optional[str] = None
    street: List[str] = Field(default_factory=list)
    city: str = ""
    region_code: str = ""
    postal_code: str = ""
    country_code: str = Field("US", min_length=2, max_length=2)
    phone: Optional[str] = None
    email: Optional[str] = None
    residential: Optional[bool] = None

    @field_validator("country_code")
    @classmethod
    def validate_country_code(cls, v):
        return v.upper()

    @field_validator("street", mode="before")
    @classmethod
    def split_street(cls, v):
        if isinstance(v, str):
            return [line for line in v.split("\n") if line.strip()]
        return v or []

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def phone_digits(self) -> str:
        return re.sub(r"\D", "", self.phone or "")

    @property
    def is_residential(self) -> bool:
        if self.residential is not None:
            return self.residential
        return not self.company


# ==================== Rate Schemas ====================


class RateRequest(BaseModel):
    """
    Normalized rate request.

    Origin fields default to the carrier's shipper address (see with_origin).
    Residential defaults to "no company on the destination".
    """
    origin_country: str = ""
    origin_postcode: str = ""
    origin_region: str = ""
    origin_city: str = ""
    origin_street: str = ""

    dest_country: str = "US"
    dest_postcode: str = ""
    dest_region: str = ""
    dest_city: str = ""
    dest_street: str = ""
    dest_company: str = ""
    residential: Optional[bool] = None

    weight: float = 1.0  # pounds
    length: Optional[float] = Field(None, gt=0)
    width: Optional[float] = Field(None, gt=0)
    height: Optional[float] = Field(None, gt=0)
    package_value: float = Field(0.0, ge=0)  # cart subtotal

    store_id: Optional[int] = None
    session_id: Optional[str] = None
    cart_id: Optional[str] = None

    @field_validator("origin_country", "dest_country")
    @classmethod
    def upper_country(cls, v):
        return (v or "").upper()

    @field_validator("weight", mode="before")
    @classmethod
    def default_weight(cls, v):
        try:
            weight = float(v)
        except (TypeError, ValueError):
            return 1.0
        return weight if weight > 0 else 1.0

    @property
    def is_residential(self) -> bool:
        if self.residential is not None:
            return self.residential
        return not self.dest_company

    @property
    def rounded_weight(self) -> float:
        return round(self.weight, 1)

    def with_origin(self, shipper: ShipperAddress) -> "RateRequest":
        """Fill empty origin fields from the shipper address."""
        return self.model_copy(update={
            "origin_country": self.origin_country or shipper.country_code or "US",
            "origin_postcode": self.origin_postcode or shipper.postal_code,
            "origin_region": self.origin_region or shipper.state_province,
            "origin_city": self.origin_city or shipper.city,
            "origin_street": self.origin_street or shipper.address_line1,
        })


# ==================== Label Schemas ====================


class PackageOverrides(BaseModel):
    """Operator overrides applied when creating a label."""
    weight: Optional[float] = Field(None, gt=0)
    length: Optional[float] = Field(None, gt=0)
    width: Optional[float] = Field(None, gt=0)
    height: Optional[float] = Field(None, gt=0)
    label_format: Optional[str] = None
    service_code: Optional[str] = None


class OrderItem(BaseModel):
    sku: str = ""
    name: str = ""
    qty: float = Field(1, ge=0)
    weight: float = Field(0.0, ge=0)  # per unit, pounds
    price: float = Field(0.0, ge=0)


class ShipmentOrder(BaseModel):
    """
    The part of a host order the label flow needs.

    shipping_method is "<carrier>_<method>", e.g. "ups_03" or "usps_PRIORITY_MAIL".
    """
    order_id: int
    increment_id: str
    store_id: Optional[int] = None
    shipping_method: str
    shipping_address: Address
    items: List[OrderItem] = Field(default_factory=list)
    grand_total: float = Field(0.0, ge=0)
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None

    @field_validator("shipping_method")
    @classmethod
    def validate_shipping_method(cls, v):
        if "_" not in v:
            raise ValueError("shipping_method must look like '<carrier>_<method>'")
        return v

    @property
    def carrier_code(self) -> CarrierCode:
        return CarrierCode.from_value(self.shipping_method.split("_", 1)[0])

    @property
    def method_code(self) -> str:
        return self.shipping_method.split("_", 1)[1]

    @property
    def total_weight(self) -> float:
        weight = sum(item.weight * item.qty for item in self.items)
        return round(weight, 2) if weight > 0 else 1.0
