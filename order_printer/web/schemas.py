from __future__ import annotations

"""
Pydantic schemas for the Order Printer API (v1).

These models validate incoming print job submissions before they are written to
the job store. Stored payloads are plain JSON; the worker re-parses them with
OrderPayload.from_dict at print time.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from order_printer.core.models import ORDER_JOB


def _has_control_chars(s: str) -> bool:
    return any((ord(c) < 32 and c not in "\n\r\t") or ord(c) == 127 for c in s)


class OrderItemIn(BaseModel):
    """A single line of the order."""

    name: str = Field(min_length=1, max_length=120, examples=["Burger", "Caipirinha"])
    quantity: int = Field(ge=1, le=999, examples=[1, 2])
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2, examples=["12.00"])

    @field_validator("name")
    @classmethod
    def _name_clean(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("item name is required")
        if _has_control_chars(v):
            raise ValueError("item name cannot contain control characters")
        return v


class OrderPayloadIn(BaseModel):
    """The order as it should appear on the ticket."""

    table_number: int = Field(ge=0, le=9999, description="0 means the walk-up counter")
    client_name: Optional[str] = Field(default=None, max_length=80)
    delivery_type: str = Field(default="mesa", max_length=20, examples=["balcao", "mesa"])
    created_at: Optional[datetime] = Field(default=None, description="Order time; defaults to now")
    notes: Optional[str] = Field(default=None, max_length=500)
    items: List[OrderItemIn] = Field(default_factory=list, max_length=100)

    @field_validator("client_name", "notes")
    @classmethod
    def _no_control_chars(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if _has_control_chars(v):
            raise ValueError("text fields cannot contain control characters")
        return v.strip() or None

    @field_validator("delivery_type")
    @classmethod
    def _delivery_type_clean(cls, v: str) -> str:
        if _has_control_chars(v):
            raise ValueError("delivery_type cannot contain control characters")
        return v.strip().lower() or "mesa"


class JobSubmitRequest(BaseModel):
    job_type: Literal["order", "test"] = ORDER_JOB
    payload: Optional[OrderPayloadIn] = None

    @model_validator(mode="after")
    def _payload_required_for_orders(self) -> "JobSubmitRequest":
        if self.job_type == ORDER_JOB and self.payload is None:
            raise ValueError("payload is required for order jobs")
        return self

    def payload_dict(self) -> Optional[Dict[str, Any]]:
        if self.payload is None:
            return None
        return self.payload.model_dump(mode="json")


class Links(BaseModel):
    self: str


class JobAcceptedResponse(BaseModel):
    id: str
    job_type: str
    status: str
    retry_of: Optional[str] = None
    links: Links


__all__ = [
    "JobAcceptedResponse",
    "JobSubmitRequest",
    "Links",
    "OrderItemIn",
    "OrderPayloadIn",
]
