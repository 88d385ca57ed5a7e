"""
FedEx wire structs (Rate Quotes v1, Ship v1).
"""
from typing import Any, Dict, List, Optional

from pydantic import Field

from parcelgate.schemas.wire import LooseFloat, WireModel


# ==================== Shared ====================


class FedExAccountNumber(WireModel):
    value: str = ""


class FedExAddress(WireModel):
    streetLines: Optional[List[str]] = None
    city: Optional[str] = None
    stateOrProvinceCode: str = ""
    postalCode: str = ""
    countryCode: str = "US"
    residential: Optional[bool] = None


class FedExContact(WireModel):
    personName: str = ""
    companyName: Optional[str] = None
    phoneNumber: str = ""


class FedExParty(WireModel):
    contact: Optional[FedExContact] = None
    address: FedExAddress


class FedExWeight(WireModel):
    units: str = "LB"
    value: float


class FedExDimensions(WireModel):
    length: int
    width: int
    height: int
    units: str = "IN"


class FedExPackageLineItem(WireModel):
    weight: FedExWeight
    dimensions: Optional[FedExDimensions] = None
    declaredValue: Optional[Dict[str, Any]] = None
    customerReferences: Optional[List[Dict[str, str]]] = None


# ==================== Rating ====================


class FedExRateShipment(WireModel):
    shipper: FedExParty
    recipient: FedExParty
    pickupType: str = "USE_SCHEDULED_PICKUP"
    packagingType: str = "YOUR_PACKAGING"
    rateRequestType: List[str] = Field(default_factory=lambda: ["LIST"])
    requestedPackageLineItems: List[FedExPackageLineItem]


class FedExRateRequest(WireModel):
    accountNumber: FedExAccountNumber
    rateRequestControlParameters: Dict[str, Any] = Field(
        default_factory=lambda: {"returnTransitTimes": True, "rateSortOrder": "SERVICENAMETRADITIONAL"}
    )
    requestedShipment: FedExRateShipment


class FedExRatedShipmentDetail(WireModel):
    totalNetCharge: LooseFloat = None
    totalNetFedExCharge: LooseFloat = None
    totalNetChargeWithDutiesAndTaxes: LooseFloat = None

    @property
    def amount(self) -> float:
        """totalNetCharge, or the alternates when it is missing or not positive."""
        if self.totalNetCharge and self.totalNetCharge > 0:
            return self.totalNetCharge
        if self.totalNetFedExCharge is not None:
            return self.totalNetFedExCharge
        return self.totalNetChargeWithDutiesAndTaxes or 0.0


class FedExOperationalDetail(WireModel):
    transitTime: Any = None  # "THREE_DAYS" or an object with description/value
    deliveryDate: Optional[str] = None
    deliveryTime: Optional[str] = None
    deliveryDay: Optional[str] = None


class FedExDateDetail(WireModel):
    dayOfWeek: Optional[str] = None
    dayCxsFormat: Optional[str] = None


class FedExCommit(WireModel):
    dateDetail: Optional[FedExDateDetail] = None
    commitTimestamp: Optional[str] = None
    transitDays: Any = None
    guaranteedDeliveryTimestamp: Optional[str] = None
    commitMessageDetails: Any = None


class FedExRateReplyDetail(WireModel):
    serviceType: str = ""
    serviceName: Optional[str] = None
    ratedShipmentDetails: List[FedExRatedShipmentDetail] = Field(default_factory=list)
    operationalDetail: Optional[FedExOperationalDetail] = None
    commit: Optional[FedExCommit] = None


class FedExRateResponse(WireModel):
    rateReplyDetails: List[FedExRateReplyDetail] = Field(default_factory=list)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "FedExRateResponse":
        return cls.model_validate(data.get("output") or {})


# ==================== Shipping ====================


class FedExLabelSpecification(WireModel):
    labelFormatType: str = "COMMON2D"
    imageType: str = "PDF"
    labelStockType: str = "PAPER_4X6"
    resolution: Optional[int] = None


class FedExShipRequestedShipment(WireModel):
    shipper: FedExParty
    recipients: List[FedExParty]
    shipDatestamp: str
    pickupType: str = "USE_SCHEDULED_PICKUP"
    serviceType: str
    packagingType: str = "YOUR_PACKAGING"
    shippingChargesPayment: Dict[str, Any]
    labelSpecification: FedExLabelSpecification
    requestedPackageLineItems: List[FedExPackageLineItem]


class FedExShipRequest(WireModel):
    labelResponseOptions: str = "LABEL"
    accountNumber: FedExAccountNumber
    requestedShipment: FedExShipRequestedShipment


class FedExCancelRequest(WireModel):
    accountNumber: FedExAccountNumber
    trackingNumber: str


class FedExDocumentPart(WireModel):
    image: Optional[str] = None


class FedExPackageDocument(WireModel):
    encodedLabel: Optional[str] = None
    parts: List[FedExDocumentPart] = Field(default_factory=list)


class FedExValue(WireModel):
    value: LooseFloat = None


class FedExPieceResponse(WireModel):
    masterTrackingNumber: Optional[str] = None
    trackingNumber: Optional[str] = None
    packageDocuments: List[FedExPackageDocument] = Field(default_factory=list)
    label: Optional[FedExPackageDocument] = None
    encodedLabel: Optional[str] = None
    netCharge: LooseFloat = None
    netRateAmount: LooseFloat = None
    baseRateAmount: LooseFloat = None
    weight: Optional[FedExValue] = None
    billedWeight: Optional[FedExValue] = None

    @property
    def tracking(self) -> Optional[str]:
        return self.masterTrackingNumber or self.trackingNumber

    @property
    def label_image(self) -> Optional[str]:
        for doc in self.packageDocuments:
            if doc.encodedLabel:
                return doc.encodedLabel
            if doc.parts and doc.parts[0].image:
                return doc.parts[0].image
        if self.label and self.label.parts and self.label.parts[0].image:
            return self.label.parts[0].image
        return self.encodedLabel or None

    @property
    def postage(self) -> float:
        for amount in (self.netCharge, self.netRateAmount, self.baseRateAmount):
            if amount is not None:
                return amount
        return 0.0

    @property
    def billed_weight(self) -> float:
        for weight in (self.weight, self.billedWeight):
            if weight and weight.value is not None:
                return weight.value
        return 0.0


class FedExCompletedShipmentDetail(WireModel):
    completedPackageDetails: List[FedExPieceResponse] = Field(default_factory=list)


class FedExTransactionShipment(WireModel):
    serviceType: Optional[str] = None
    serviceName: Optional[str] = None
    pieceResponses: List[FedExPieceResponse] = Field(default_factory=list)
    completedShipmentDetail: Optional[FedExCompletedShipmentDetail] = None

    @property
    def piece(self) -> Optional[FedExPieceResponse]:
        if self.pieceResponses:
            return self.pieceResponses[0]
        if self.completedShipmentDetail and self.completedShipmentDetail.completedPackageDetails:
            return self.completedShipmentDetail.completedPackageDetails[0]
        return None


class FedExShipResponse(WireModel):
    transactionShipments: List[FedExTransactionShipment] = Field(default_factory=list)

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "FedExShipResponse":
        return cls.model_validate(data.get("output") or data)


# ==================== Tracking (webhook) ====================


class FedExScanLocation(WireModel):
    city: Optional[str] = None
    stateOrProvinceCode: Optional[str] = None
    countryCode: Optional[str] = None
    postalCode: Optional[str] = None


class FedExScanEvent(WireModel):
    date: Optional[str] = None
    eventType: Optional[str] = None
    eventDescription: Optional[str] = None
    derivedStatusCode: Optional[str] = None
    scanLocation: Optional[FedExScanLocation] = None


class FedExDeliveryDetails(WireModel):
    receivedByName: Optional[str] = None
    signatureImageUrl: Optional[str] = None


class FedExTrackResult(WireModel):
    trackingNumber: Optional[str] = None
    scanEvents: List[FedExScanEvent] = Field(default_factory=list)
    deliveryDetails: Optional[FedExDeliveryDetails] = None


class FedExCompleteTrackResult(WireModel):
    trackingNumber: str = ""
    trackResults: List[FedExTrackResult] = Field(default_factory=list)


class FedExTrackingOutput(WireModel):
    completeTrackResults: List[FedExCompleteTrackResult] = Field(default_factory=list)


class FedExTrackingPayload(WireModel):
    output: FedExTrackingOutput = Field(default_factory=FedExTrackingOutput)
