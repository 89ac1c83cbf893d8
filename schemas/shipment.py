"""
Pydantic schemas for canonical shipments and carrier rates
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any


REQUIRED_FIELDS = ("origin_zip", "destination_zip", "weight")


class Shipment(BaseModel):
    """
    Canonical, post-normalization shipment.

    A shipment may be incomplete (that is how orphans are represented before
    quoting); ``is_complete`` is the single completeness rule used by
    ingestion, the orchestrator, re-analysis and legacy migration.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(..., ge=1)
    tracking_id: str = ""

    origin_zip: Optional[str] = None
    destination_zip: Optional[str] = None
    weight: Optional[float] = None

    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None

    carrier: Optional[str] = None
    # What actually happened: never rewritten after ingestion
    original_service: Optional[str] = None
    # What we quote against; set by user corrections
    intended_service: Optional[str] = None

    is_residential: bool = False
    current_rate: float = Field(default=0.0, ge=0)

    raw_data: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def synthesize_tracking_id(self):
        if not self.tracking_id or not self.tracking_id.strip():
            self.tracking_id = f"Shipment-{self.id}"
        return self

    @field_validator("origin_zip", "destination_zip", mode="before")
    @classmethod
    def clean_zip(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("length", "width", "height", mode="before")
    @classmethod
    def drop_non_positive_dimensions(cls, v):
        """Dimensions are optional; the quote provider assumes defaults when absent"""
        if v is None or v == "":
            return None
        v = float(v)
        return v if v > 0 else None

    def missing_fields(self) -> List[str]:
        missing = []
        if not self.origin_zip:
            missing.append("origin_zip")
        if not self.destination_zip:
            missing.append("destination_zip")
        if self.weight is None or self.weight <= 0:
            missing.append("weight")
        return missing

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields()


class Rate(BaseModel):
    """One candidate rate returned by the quote provider"""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    carrier_id: str = ""
    carrier_name: str = ""
    service_code: str = ""
    service_name: str = ""
    total_charges: float
    currency: str = "USD"
    transit_time: Optional[str] = None

    @field_validator("total_charges", mode="before")
    @classmethod
    def parse_charges(cls, v):
        if isinstance(v, str):
            v = v.replace("$", "").replace(",", "").strip()
        return v

    @field_validator("transit_time", mode="before")
    @classmethod
    def stringify_transit_time(cls, v):
        return None if v is None else str(v)


class QuoteResponse(BaseModel):
    """
    Quote provider answer for one shipment.

    ``success`` is optional on the wire: a missing or false value is treated
    as a provider failure, a true value with no rates as "no rates".
    """

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    success: Optional[bool] = None
    rates: List[Rate] = Field(default_factory=list)
    error: Optional[str] = None

    @field_validator("rates", mode="before")
    @classmethod
    def ensure_list(cls, v):
        return v or []
