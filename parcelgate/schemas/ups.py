"""
UPS wire structs (Rating v2205, Time in Transit v1, Shipping v2205).
"""
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator

from parcelgate.schemas.wire import LooseFloat, LooseInt, LooseStr, WireModel, as_list


# ==================== Shared ====================


class UPSCode(WireModel):
    Code: LooseStr = None
    Description: Optional[str] = None


class UPSPhone(WireModel):
    Number: str = "0000000000"


class UPSAddress(WireModel):
    AddressLine: List[str] = Field(default_factory=list)
    City: str = ""
    StateProvinceCode: str = ""
    PostalCode: str = ""
    CountryCode: str = "US"
    ResidentialAddressIndicator: Optional[str] = None  # presence is the flag, value is ""


class UPSParty(WireModel):
    Name: Optional[str] = None
    AttentionName: Optional[str] = None
    ShipperNumber: Optional[str] = None
    Phone: Optional[UPSPhone] = None
    Address: UPSAddress


class UPSDimensions(WireModel):
    UnitOfMeasurement: UPSCode = UPSCode(Code="IN")
    Length: str
    Width: str
    Height: str


class UPSPackageWeight(WireModel):
    UnitOfMeasurement: UPSCode = UPSCode(Code="LBS")
    Weight: str


class UPSPackage(WireModel):
    Description: Optional[str] = None
    PackagingType: Optional[UPSCode] = None  # rating
    Packaging: Optional[UPSCode] = None  # shipping
    Dimensions: Optional[UPSDimensions] = None
    PackageWeight: UPSPackageWeight
    PackageServiceOptions: Optional[Dict[str, Any]] = None


class UPSBillShipper(WireModel):
    AccountNumber: str


class UPSShipmentCharge(WireModel):
    Type: str = "01"  # Transportation
    BillShipper: UPSBillShipper


class UPSRequestInfo(WireModel):
    SubVersion: str = "2205"
    RequestOption: Optional[str] = None
    TransactionReference: Dict[str, str] = Field(default_factory=dict)


# ==================== Rating ====================


class UPSRateShipment(WireModel):
    Shipper: UPSParty
    ShipTo: UPSParty
    ShipFrom: UPSParty
    PaymentDetails: Dict[str, UPSShipmentCharge]
    Package: List[UPSPackage]
    ShipmentRatingOptions: Dict[str, str] = Field(default_factory=lambda: {"NegotiatedRatesIndicator": ""})


class UPSRateRequest(WireModel):
    Request: UPSRequestInfo = UPSRequestInfo()
    Shipment: UPSRateShipment

    def to_payload(self) -> Dict[str, Any]:
        return {"RateRequest": super().to_payload()}


class UPSMoney(WireModel):
    MonetaryValue: LooseFloat = None
    CurrencyCode: Optional[str] = None


class UPSNegotiatedCharges(WireModel):
    TotalCharge: Optional[UPSMoney] = None


class UPSGuaranteedDelivery(WireModel):
    BusinessDaysInTransit: LooseInt = None
    DeliveryByTime: Optional[str] = None


class UPSRatedShipment(WireModel):
    Service: UPSCode = UPSCode()
    TotalCharges: Optional[UPSMoney] = None
    NegotiatedRateCharges: Optional[UPSNegotiatedCharges] = None
    GuaranteedDelivery: Optional[UPSGuaranteedDelivery] = None

    @property
    def price(self) -> Optional[float]:
        """Negotiated total when present, else published total."""
        negotiated = self.NegotiatedRateCharges
        if negotiated and negotiated.TotalCharge and negotiated.TotalCharge.MonetaryValue is not None:
            return negotiated.TotalCharge.MonetaryValue
        if self.TotalCharges and self.TotalCharges.MonetaryValue is not None:
            return self.TotalCharges.MonetaryValue
        return None


class UPSRateResponse(WireModel):
    RatedShipment: List[UPSRatedShipment] = Field(default_factory=list)

    @field_validator("RatedShipment", mode="before")
    @classmethod
    def wrap_single(cls, v):
        return as_list(v)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "UPSRateResponse":
        return cls.model_validate(data.get("RateResponse") or {})


# ==================== Time in Transit ====================


class UPSTransitRequest(WireModel):
    originCountryCode: str
    originStateProvince: str = ""
    originCityName: str = ""
    originPostalCode: str = ""
    destinationCountryCode: str
    destinationStateProvince: str = ""
    destinationCityName: str = ""
    destinationPostalCode: str = ""
    weight: str
    weightUnitOfMeasure: str = "LBS"
    shipDate: str  # Y-m-d
    shipTime: str  # HH:MM:SS
    residentialIndicator: str  # 01 residential, 02 commercial


class UPSTransitService(WireModel):
    serviceLevel: Optional[str] = None
    businessTransitDays: LooseInt = None
    deliveryDate: Optional[str] = None
    deliveryTime: Optional[str] = None
    deliveryDayOfWeek: Optional[str] = None
    guaranteeIndicator: LooseStr = None


class UPSTransitResponse(WireModel):
    services: List[UPSTransitService] = Field(default_factory=list)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "UPSTransitResponse":
        return cls.model_validate(data.get("emsResponse") or {})


# ==================== Shipping ====================


class UPSShipment(WireModel):
    Description: str
    Shipper: UPSParty
    ShipTo: UPSParty
    ShipFrom: UPSParty
    PaymentInformation: Dict[str, List[UPSShipmentCharge]]
    Service: UPSCode
    Package: List[UPSPackage]
    ReferenceNumber: List[Dict[str, str]] = Field(default_factory=list)


class UPSLabelSpecification(WireModel):
    LabelImageFormat: UPSCode
    LabelStockSize: Dict[str, str] = Field(default_factory=lambda: {"Height": "6", "Width": "4"})


class UPSShipmentRequest(WireModel):
    Request: UPSRequestInfo
    Shipment: UPSShipment
    LabelSpecification: UPSLabelSpecification

    def to_payload(self) -> Dict[str, Any]:
        return {"ShipmentRequest": super().to_payload()}


class UPSShippingLabel(WireModel):
    GraphicImage: Optional[str] = None
    HTMLImage: Optional[str] = None


class UPSBillingWeight(WireModel):
    Weight: LooseFloat = None
    Zone: LooseStr = None


class UPSPackageResult(WireModel):
    TrackingNumber: Optional[str] = None
    ShippingLabel: Optional[UPSShippingLabel] = None
    GraphicImage: Optional[str] = None
    BillingWeight: Optional[UPSBillingWeight] = None

    @property
    def label_image(self) -> Optional[str]:
        if self.ShippingLabel and self.ShippingLabel.GraphicImage:
            return self.ShippingLabel.GraphicImage
        if self.ShippingLabel and self.ShippingLabel.HTMLImage:
            return self.ShippingLabel.HTMLImage
        return self.GraphicImage or None


class UPSShipmentCharges(WireModel):
    TotalCharges: Optional[UPSMoney] = None
    TransportationCharges: Optional[UPSMoney] = None


class UPSShipmentResults(WireModel):
    ShipmentIdentificationNumber: Optional[str] = None
    PackageResults: List[UPSPackageResult] = Field(default_factory=list)
    ShipmentCharges: Optional[UPSShipmentCharges] = None
    NegotiatedRateCharges: Optional[UPSNegotiatedCharges] = None
    BillingWeight: Optional[UPSBillingWeight] = None
    RatingZone: LooseStr = None

    @field_validator("PackageResults", mode="before")
    @classmethod
    def wrap_single(cls, v):
        return as_list(v)

    @property
    def postage(self) -> float:
        charges = self.ShipmentCharges
        for money in (
            charges.TotalCharges if charges else None,
            charges.TransportationCharges if charges else None,
            self.NegotiatedRateCharges.TotalCharge if self.NegotiatedRateCharges else None,
        ):
            if money and money.MonetaryValue:
                return money.MonetaryValue
        return 0.0

    @property
    def zone(self) -> Optional[str]:
        if self.BillingWeight and self.BillingWeight.Zone:
            return self.BillingWeight.Zone
        return self.RatingZone


class UPSShipmentResponse(WireModel):
    ShipmentResults: Optional[UPSShipmentResults] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "UPSShipmentResponse":
        return cls.model_validate(data.get("ShipmentResponse") or {})


# ==================== Track Alert (webhook) ====================


class UPSActivityLocation(WireModel):
    city: Optional[str] = None
    stateProvince: Optional[str] = None
    postalCode: Optional[str] = None
    country: Optional[str] = None


class UPSActivityStatus(WireModel):
    type: Optional[str] = None
    code: LooseStr = None
    description: Optional[str] = None


class UPSTrackAlertEvent(WireModel):
    trackingNumber: str
    localActivityDate: Optional[str] = None
    localActivityTime: Optional[str] = None
    gmtActivityDate: Optional[str] = None
    gmtActivityTime: Optional[str] = None
    activityLocation: Optional[UPSActivityLocation] = None
    activityStatus: UPSActivityStatus = Field(default_factory=UPSActivityStatus)
    scheduledDeliveryDate: Optional[str] = None
    actualDeliveryDate: Optional[str] = None
    signedForByName: Optional[str] = None
    deliveryPhotoUrl: Optional[str] = None


class UPSTrackAlertPayload(WireModel):
    """One event object, a list of them, or {"events": [...]}."""
    events: List[UPSTrackAlertEvent] = Field(default_factory=list)
