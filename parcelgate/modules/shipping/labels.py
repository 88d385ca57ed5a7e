"""
Label content helpers: format detection, content type and download name.
"""
import enum

from parcelgate.models.carrier import CarrierCode


class LabelFormat(str, enum.Enum):
    PDF = "PDF"
    PNG = "PNG"
    ZPL = "ZPL"


CONTENT_TYPES = {
    LabelFormat.PDF: "application/pdf",
    LabelFormat.PNG: "image/png",
    LabelFormat.ZPL: "application/octet-stream",
}


def sniff_label_format(content: bytes) -> LabelFormat:
    """Detect the label format from magic bytes; unknown content is treated as PDF."""
    if content.startswith(b"%PDF"):
        return LabelFormat.PDF
    if content.startswith(b"\x89PNG"):
        return LabelFormat.PNG
    if content.startswith(b"^XA"):
        return LabelFormat.ZPL
    return LabelFormat.PDF


def content_type_for(label_format: LabelFormat) -> str:
    return CONTENT_TYPES.get(label_format, "application/pdf")


def label_filename(shipping_method: str, order_number: str, label_format: LabelFormat) -> str:
    """e.g. "FEDEX_SHIPPING_LABEL_100000123.pdf" for shipping method "fedex_GROUND"."""
    carrier = shipping_method.split("_", 1)[0]
    try:
        prefix = CarrierCode.from_value(carrier).value.upper()
    except ValueError:
        prefix = carrier.upper() or "SHIPPING"
    return f"{prefix}_SHIPPING_LABEL_{order_number}.{label_format.value.lower()}"
