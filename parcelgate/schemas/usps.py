"""
USPS wire structs (Shipping Options v3, Labels v3, Tracking v3).
"""
from typing import Any, Dict, List, Optional

from pydantic import Field, model_validator

from parcelgate.schemas.wire import LooseFloat, LooseInt, LooseStr, WireModel


# ==================== Shipping Options ====================


class USPSPricingOption(WireModel):
    priceType: str = "COMMERCIAL"


class USPSPackageDescription(WireModel):
    weight: float
    length: float = 10
    height: float = 4
    width: float = 6
    mailClass: Optional[str] = None
    mailingDate: str


class USPSOptionsRequest(WireModel):
    pricingOptions: List[USPSPricingOption]
    originZIPCode: str
    destinationZIPCode: Optional[str] = None  # domestic
    foreignPostalCode: Optional[str] = None  # international
    destinationCountryCode: Optional[str] = None
    destinationEntryFacilityType: str = "NONE"
    packageDescription: USPSPackageDescription
    shippingFilter: str = "PRICE"


class USPSCommitment(WireModel):
    name: Optional[str] = None
    scheduleDeliveryDate: Optional[str] = None
    scheduledDeliveryDateTime: Optional[str] = None
    serviceDays: LooseInt = None
    guaranteedDelivery: Optional[bool] = None

    @property
    def delivery_timestamp(self) -> Optional[str]:
        return self.scheduleDeliveryDate or self.scheduledDeliveryDateTime


class USPSRateOption(WireModel):
    totalPrice: LooseFloat = None
    commitment: Optional[USPSCommitment] = None


class USPSShippingOption(WireModel):
    mailClass: str = ""
    totalPrice: LooseFloat = None
    totalBasePrice: LooseFloat = None
    price: LooseFloat = None
    rateOptions: List[USPSRateOption] = Field(default_factory=list)
    commitment: Optional[USPSCommitment] = None
    serviceDays: LooseInt = None
    guaranteed: Optional[bool] = None

    @property
    def amount(self) -> float:
        for value in (self.totalPrice, self.totalBasePrice, self.price):
            if value is not None:
                return value
        for rate_option in self.rateOptions:
            if rate_option.totalPrice is not None:
                return rate_option.totalPrice
        return 0.0

    @property
    def effective_commitment(self) -> Optional[USPSCommitment]:
        if self.commitment is not None:
            return self.commitment
        if self.rateOptions:
            return self.rateOptions[0].commitment
        return None


class USPSPricingGroup(WireModel):
    shippingOptions: List[USPSShippingOption] = Field(default_factory=list)


class USPSOptionsResponse(WireModel):
    pricingOptions: List[USPSPricingGroup] = Field(default_factory=list)
    shippingOptions: List[USPSShippingOption] = Field(default_factory=list)

    @property
    def options(self) -> List[USPSShippingOption]:
        """Options flattened across pricing groups, else the top-level list."""
        if self.pricingOptions:
            return [option for group in self.pricingOptions for option in group.shippingOptions]
        return self.shippingOptions


# ==================== Labels ====================


class USPSLabelAddress(WireModel):
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    firm: Optional[str] = None
    streetAddress: str = ""
    secondaryAddress: Optional[str] = None
    city: str = ""
    state: str = ""
    ZIPCode: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None


class USPSLabelPackage(WireModel):
    mailClass: str
    weight: float
    length: float
    width: float
    height: float
    mailingDate: str
    processingCategory: str = "MACHINABLE"
    rateIndicator: str = "SP"  # single piece
    priceType: str = "COMMERCIAL"


class USPSLabelRequest(WireModel):
    imageInfo: Dict[str, str]
    toAddress: USPSLabelAddress
    fromAddress: USPSLabelAddress
    packageDescription: USPSLabelPackage
    extraServices: Optional[List[Dict[str, Any]]] = None


class USPSLabelResponse(WireModel):
    trackingNumber: Optional[str] = None
    labelImage: Optional[str] = None
    mailClass: Optional[str] = None
    postage: LooseFloat = None
    totalBasePrice: LooseFloat = None
    zone: LooseStr = None
    weight: LooseFloat = None
    SKU: Optional[Dict[str, Any]] = None
    packageDescription: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def fill_from_package(self):
        package = self.packageDescription or {}
        if not self.mailClass and package.get("mailClass"):
            self.mailClass = package["mailClass"]
        if self.weight is None and package.get("weight") is not None:
            self.weight = float(package["weight"])
        return self

    @property
    def total_postage(self) -> float:
        if self.postage is not None:
            return self.postage
        if self.SKU and self.SKU.get("postage"):
            return float(self.SKU["postage"])
        return self.totalBasePrice or 0.0


# ==================== Tracking ====================


class USPSTrackingEvent(WireModel):
    eventType: Optional[str] = None
    event: Optional[str] = None
    eventCode: LooseStr = None
    eventTimestamp: Optional[str] = None
    eventDate: Optional[str] = None
    eventTime: Optional[str] = None
    eventCity: Optional[str] = None
    eventState: Optional[str] = None
    eventCountry: Optional[str] = None
    eventZIPCode: Optional[str] = None
    name: Optional[str] = None  # signer
    firm: Optional[str] = None

    @property
    def description(self) -> str:
        return self.event or self.eventType or ""


class USPSTrackingResponse(WireModel):
    trackingNumber: str = ""
    statusSummary: Optional[str] = None
    status: Optional[str] = None
    mailClass: Optional[str] = None
    expectedDeliveryDate: Optional[str] = None
    actualDeliveryDate: Optional[str] = None
    signedForByName: Optional[str] = None
    trackingEvents: List[USPSTrackingEvent] = Field(default_factory=list)
