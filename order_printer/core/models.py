"""
Job and order data structures shared by the store, the encoder and the worker.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

# Job statuses
PENDING = "pending"
PRINTING = "printing"
COMPLETED = "completed"
FAILED = "failed"

STATUSES = (PENDING, PRINTING, COMPLETED, FAILED)

# Job types
ORDER_JOB = "order"
TEST_JOB = "test"
JOB_TYPES = (ORDER_JOB, TEST_JOB)

COUNTER_DELIVERY = "balcao"


class PayloadError(ValueError):
    """Raised when a stored payload cannot be turned into an OrderPayload."""


def _as_int(value: Any) -> int:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return int(str(value).strip())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string (a trailing 'Z' is accepted) or pass a datetime through.
    Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            raise PayloadError(f"invalid timestamp: {value!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class OrderItem:
    name: str
    quantity: int
    price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OrderItem":
        if not isinstance(data, Mapping):
            raise PayloadError(f"item must be an object, got {type(data).__name__}")
        name = str(data.get("name") or "").strip()
        try:
            quantity = _as_int(data.get("quantity", 1))
        except ValueError:
            raise PayloadError(f"invalid quantity for item {name!r}: {data.get('quantity')!r}") from None
        try:
            # str() first so floats like 12.1 keep their printed value
            price = Decimal(str(data.get("price", 0)).strip())
        except InvalidOperation:
            raise PayloadError(f"invalid price for item {name!r}: {data.get('price')!r}") from None
        if quantity < 1:
            raise PayloadError(f"quantity must be >= 1 for item {name!r}")
        if not price.is_finite() or price < 0:
            raise PayloadError(f"price must be >= 0 for item {name!r}")
        return cls(name=name, quantity=quantity, price=price)


@dataclass(frozen=True)
class OrderPayload:
    """An order as handed to the encoder. Immutable once built."""

    table_number: int
    created_at: datetime
    items: Tuple[OrderItem, ...] = ()
    client_name: Optional[str] = None
    delivery_type: str = "mesa"
    notes: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return sum((item.subtotal for item in self.items), Decimal("0"))

    @property
    def is_counter(self) -> bool:
        return self.table_number == 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], default_created_at: Optional[datetime] = None) -> "OrderPayload":
        """
        Build a payload from a stored JSON object.

        Missing `items` means no items and missing `created_at` falls back to
        `default_created_at`. Anything that cannot be coerced raises PayloadError.
        """
        if not isinstance(data, Mapping):
            raise PayloadError(f"payload must be an object, got {type(data).__name__}")
        try:
            table_number = _as_int(data.get("table_number") or 0)
        except ValueError:
            raise PayloadError(f"invalid table_number: {data.get('table_number')!r}") from None
        if table_number < 0:
            raise PayloadError(f"table_number must be >= 0, got {table_number}")

        created_at = parse_timestamp(data.get("created_at")) or default_created_at
        if created_at is None:
            raise PayloadError("payload has no created_at")

        raw_items = data.get("items") or []
        if not isinstance(raw_items, (list, tuple)):
            raise PayloadError("items must be a list")

        client_name = data.get("client_name")
        notes = data.get("notes")
        return cls(
            table_number=table_number,
            created_at=created_at,
            items=tuple(OrderItem.from_dict(i) for i in raw_items),
            client_name=str(client_name) if client_name not in (None, "") else None,
            delivery_type=str(data.get("delivery_type") or "mesa"),
            notes=str(notes) if notes not in (None, "") else None,
        )


@dataclass
class PrintJob:
    id: str
    payload: Dict[str, Any]
    status: str = PENDING
    job_type: str = ORDER_JOB
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    printed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_of: Optional[str] = None
    seq: int = 0

    def order_payload(self) -> OrderPayload:
        return OrderPayload.from_dict(self.payload, default_created_at=self.created_at)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PrintJob":
        payload = row["payload"]
        if isinstance(payload, (str, bytes)):
            payload = json.loads(payload)
        return cls(
            id=row["id"],
            payload=payload,
            status=row["status"],
            job_type=row["job_type"],
            created_at=parse_timestamp(row["created_at"]) or utc_now(),
            updated_at=parse_timestamp(row["updated_at"]),
            printed_at=parse_timestamp(row["printed_at"]),
            error_message=row["error_message"],
            retry_of=row["retry_of"],
            seq=int(row["seq"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "status": self.status,
            "payload": self.payload,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "printed_at": format_timestamp(self.printed_at),
            "error_message": self.error_message,
            "retry_of": self.retry_of,
        }


def sample_payload(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Payload used by test prints."""
    return {
        "table_number": 0,
        "client_name": "TESTE",
        "delivery_type": COUNTER_DELIVERY,
        "created_at": format_timestamp(now or utc_now()),
        "notes": "Impressao de teste",
        "items": [{"name": "Item de teste", "quantity": 1, "price": "1.00"}],
    }


__all__ = [
    "COMPLETED",
    "COUNTER_DELIVERY",
    "FAILED",
    "JOB_TYPES",
    "ORDER_JOB",
    "OrderItem",
    "OrderPayload",
    "PENDING",
    "PRINTING",
    "PayloadError",
    "PrintJob",
    "STATUSES",
    "TEST_JOB",
    "format_timestamp",
    "parse_timestamp",
    "sample_payload",
    "utc_now",
]
