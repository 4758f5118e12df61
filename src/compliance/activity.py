from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _ActivityBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    vehicle_id: str
    action: str
    description: str = ""
    performed_by: str = "System"
    occurred_at: datetime


class VehicleActivity(_ActivityBase):
    category: Literal["VEHICLE"] = "VEHICLE"
    field_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None


class DocumentActivity(_ActivityBase):
    category: Literal["DOCUMENT"] = "DOCUMENT"
    document_type: str
    verified: bool = False


class ClaimActivity(_ActivityBase):
    category: Literal["CLAIM"] = "CLAIM"
    claim_id: str
    claim_status: str
    estimated_cost: float | None = None


class ComplianceActivity(_ActivityBase):
    category: Literal["COMPLIANCE"] = "COMPLIANCE"
    previous_declaration_id: str | None = None
    declaration_id: str | None = None
    severity: str | None = None


class BookingActivity(_ActivityBase):
    category: Literal["BOOKING"] = "BOOKING"
    trip_id: str
    start_mileage: int | None = None
    end_mileage: int | None = None


Activity = Annotated[
    Union[VehicleActivity, DocumentActivity, ClaimActivity, ComplianceActivity, BookingActivity],
    Field(discriminator="category"),
]

_activity_adapter: TypeAdapter[Any] = TypeAdapter(Activity)


def decode_activity(raw: dict[str, Any]) -> Activity:
    return _activity_adapter.validate_python(raw)


def encode_activity(activity: Activity) -> dict[str, Any]:
    return activity.model_dump(mode="json")
