"""
Ticket encoding for Order Printer.

Renders an OrderPayload into a single ESC/POS byte stream:
- Control codes (init, align, bold, character size, cut) come from python-escpos,
  rendered into an in-memory Dummy printer
- Printable text is encoded with one fixed single-byte code page (latin-1 by default)
  so accented characters line up with the printer's font table
- The printed total is always recomputed from the items

Encoding is pure and deterministic: no I/O and no wall-clock time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from escpos.printer import Dummy

from order_printer.core.config import TicketSettings
from order_printer.core.models import (
    COUNTER_DELIVERY,
    JOB_TYPES,
    OrderPayload,
    PayloadError,
    PrintJob,
)


LINE_WIDTH = 32
DIVIDER = "-" * LINE_WIDTH
DOUBLE_DIVIDER = "=" * LINE_WIDTH
DATE_FORMAT = "%d/%m/%Y %H:%M"
CENTS = Decimal("0.01")


@dataclass(frozen=True)
class TicketLabels:
    counter: str
    table: str
    pickup: str
    deliver: str
    client: str
    no_client: str
    date: str
    items: str
    each: str
    subtotal: str
    notes: str
    total: str
    thanks: str


LABELS: Dict[str, TicketLabels] = {
    "pt": TicketLabels(
        counter="BALCAO",
        table="MESA {n}",
        pickup="RETIRAR NO BALCAO",
        deliver="ENTREGAR NA MESA",
        client="Cliente",
        no_client="N/A",
        date="Data",
        items="ITENS DO PEDIDO",
        each="cada",
        subtotal="Subtotal",
        notes="OBSERVACOES",
        total="TOTAL",
        thanks="Obrigado pela preferencia!",
    ),
    "en": TicketLabels(
        counter="COUNTER",
        table="TABLE {n}",
        pickup="PICK UP AT COUNTER",
        deliver="DELIVER TO TABLE",
        client="Client",
        no_client="N/A",
        date="Date",
        items="ORDER ITEMS",
        each="each",
        subtotal="Subtotal",
        notes="NOTES",
        total="TOTAL",
        thanks="Thank you for your preference!",
    ),
}


def format_currency(value: Decimal, prefix: str = "R$ ") -> str:
    """
    Fixed two decimals with a comma separator, e.g. Decimal("24") -> "R$ 24,00".
    """
    amount = Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)
    return prefix + f"{amount:.2f}".replace(".", ",")


def _zone(name: str):
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def format_datetime(value: datetime, tz: Optional[str] = None) -> str:
    """
    Render `value` in the named zone, or in the host's local time zone when none is set.
    """
    value = value.astimezone(_zone(tz)) if tz else value.astimezone()
    return value.strftime(DATE_FORMAT)


def location_label(payload: OrderPayload, labels: TicketLabels) -> str:
    if payload.is_counter:
        return labels.counter
    return labels.table.format(n=payload.table_number)


def delivery_label(payload: OrderPayload, labels: TicketLabels) -> str:
    return labels.pickup if payload.delivery_type == COUNTER_DELIVERY else labels.deliver


def _clean(text: str) -> str:
    # Control bytes in user text would be read as printer commands.
    return "".join(c if (c == "\n" or ord(c) >= 32) and ord(c) != 127 else " " for c in text)


class TicketEncoder:
    """
    Turns orders into printer-ready bytes using the configured ticket settings.
    """

    def __init__(self, settings: Optional[TicketSettings] = None) -> None:
        self.settings = settings or TicketSettings()
        self.labels = LABELS[self.settings.language]

    def _text(self, p: Dummy, text: str) -> None:
        # Bypass MagicEncode: the font table is fixed to one code page.
        p._raw(_clean(text).encode(self.settings.encoding, errors="replace"))

    def _line(self, p: Dummy, text: str = "") -> None:
        self._text(p, f"{text}\n")

    def _money(self, value: Decimal) -> str:
        return format_currency(value, self.settings.currency_prefix)

    def encode(self, payload: OrderPayload) -> bytes:
        """
        Render one order ticket. Never raises for a well-formed payload.
        """
        labels = self.labels
        p = Dummy()
        p.hw("INIT")

        # Header
        p.set(align="center", bold=True, double_height=True, double_width=True)
        for line in self.settings.header_lines:
            self._line(p, line)
        p.set(normal_textsize=True, bold=False)
        self._line(p, DOUBLE_DIVIDER)

        # Order identity
        p.set(align="left", bold=True, double_height=True)
        self._line(p, location_label(payload, labels))
        p.set(normal_textsize=True, bold=True)
        self._line(p, f"{labels.client}: {payload.client_name or labels.no_client}")
        self._line(p, f">> {delivery_label(payload, labels)} <<")
        p.set(bold=False)

        self._line(p, DIVIDER)
        self._line(p, f"{labels.date}: {format_datetime(payload.created_at, self.settings.timezone)}")
        self._line(p, DIVIDER)

        # Items, in input order
        p.set(bold=True)
        self._line(p, f"{labels.items}:")
        p.set(bold=False)
        self._line(p)
        for item in payload.items:
            p.set(bold=True)
            self._line(p, f"{item.quantity}x {item.name}")
            p.set(bold=False)
            self._line(p, f"   {self._money(item.price)} {labels.each}")
            self._line(p, f"   {labels.subtotal}: {self._money(item.subtotal)}")
            self._line(p)
        self._line(p, DIVIDER)

        if payload.notes and payload.notes.strip():
            p.set(bold=True)
            self._line(p, f"{labels.notes}:")
            p.set(bold=False)
            self._line(p, payload.notes)
            self._line(p, DIVIDER)

        # Total
        p.set(align="center", bold=True, double_height=True)
        self._line(p, f"{labels.total}: {self._money(payload.total)}")
        p.set(normal_textsize=True, bold=False)

        # Footer
        self._line(p)
        self._line(p, labels.thanks)
        p.cut(mode="PART")
        return p.output

    def encode_job(self, job: PrintJob) -> bytes:
        """
        Render the ticket for a stored job. Raises PayloadError on malformed payloads
        or unknown job types.
        """
        if job.job_type not in JOB_TYPES:
            raise PayloadError(f"unknown job type: {job.job_type!r}")
        return self.encode(job.order_payload())


__all__ = [
    "DIVIDER",
    "DOUBLE_DIVIDER",
    "LABELS",
    "TicketEncoder",
    "TicketLabels",
    "delivery_label",
    "format_currency",
    "format_datetime",
    "location_label",
]
