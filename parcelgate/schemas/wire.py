"""
Common pieces of the carrier wire schemas.

Carrier payloads use the carriers' own field names (PascalCase for UPS,
camelCase for FedEx and USPS), so the models keep them verbatim. Numbers
arrive as strings, numbers or empty strings depending on the endpoint.
"""
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


def as_list(v: Any) -> List[Any]:
    """Carriers return a single object where a list has one element."""
    if v is None:
        return []
    if isinstance(v, dict):
        return [v]
    return list(v)


LooseFloat = Annotated[Optional[float], BeforeValidator(_blank_to_none)]
LooseInt = Annotated[Optional[int], BeforeValidator(_blank_to_none)]
LooseStr = Annotated[Optional[str], BeforeValidator(lambda v: None if v is None else str(v))]


class WireModel(BaseModel):
    """Carrier request/response struct."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
