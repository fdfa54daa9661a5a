"""
Raw TCP delivery of encoded tickets to a network printer (port 9100 style).

Each delivery opens its own python-escpos `Network` connection, writes the whole
stream, half-closes and closes. Connect and write are both bounded by one timeout.
Failures are raised as distinct PrinterTransportError subclasses; there is no
retry here.

Deliveries and reachability checks share one slot, so the printer never sees
more than one connection from this process.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Optional

from escpos.exceptions import DeviceNotFoundError
from escpos.printer import Network

from order_printer.core.config import ConfigError, PrinterSettings

logger = logging.getLogger(__name__)


class PrinterTransportError(RuntimeError):
    """Base class for a failed delivery attempt."""

    kind = "transport error"


class PrinterTimeoutError(PrinterTransportError):
    kind = "timeout"


class PrinterConnectionError(PrinterTransportError):
    kind = "connection error"


class PrinterWriteError(PrinterTransportError):
    kind = "write error"


@dataclass(frozen=True)
class DeliveryReport:
    host: str
    port: int
    bytes_sent: int
    elapsed_ms: int


class PrinterTransport:
    """
    Delivers byte streams to one printer endpoint.
    """

    def __init__(self, settings: PrinterSettings) -> None:
        self.host = settings.host
        self.port = settings.port
        self.timeout = settings.timeout
        self._lock = threading.Lock()
        self._slot = threading.Lock()
        self._open = 0
        self._last_ok = True
        self._last_reason: Optional[str] = None

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def open_connections(self) -> int:
        with self._lock:
            return self._open

    def _track(self, delta: int) -> None:
        with self._lock:
            self._open += delta

    def _remember(self, ok: bool, reason: Optional[str] = None) -> None:
        self._last_ok, self._last_reason = ok, reason

    def check_resolvable(self) -> None:
        """
        Resolve the printer host; raise ConfigError if it cannot be resolved.
        """
        try:
            socket.getaddrinfo(self.host, self.port, type=socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError) as e:
            raise ConfigError(f"Cannot resolve printer host {self.host!r}: {e}") from e

    def _connect(self) -> Network:
        p = Network(self.host, self.port, timeout=self.timeout)
        try:
            p.open()
        except DeviceNotFoundError as e:
            # Network.open() wraps the socket error; the original is the context.
            cause = e.__context__
            if isinstance(cause, socket.timeout):
                raise PrinterTimeoutError(f"no connection to {self.endpoint} within {self.timeout:g}s") from e
            raise PrinterConnectionError(f"cannot connect to {self.endpoint}: {cause or e}") from e
        except OSError as e:
            raise PrinterConnectionError(f"cannot connect to {self.endpoint}: {e}") from e
        return p

    def _close(self, p: Network) -> None:
        try:
            p.close()
        except OSError as e:
            logger.debug("Closing printer connection to %s failed: %s", self.endpoint, e)

    def send(self, data: bytes) -> DeliveryReport:
        """
        Deliver `data` over a fresh connection.

        Raises PrinterTimeoutError, PrinterConnectionError or PrinterWriteError.
        The connection is always closed before returning or raising.
        """
        with self._slot:
            try:
                report = self._deliver(data)
            except PrinterTransportError as e:
                self._remember(False, f"printer_unreachable: {e.kind}")
                raise
            self._remember(True)
            return report

    def _deliver(self, data: bytes) -> DeliveryReport:
        started = time.monotonic()
        logger.info("Connecting to printer at %s", self.endpoint)
        p = self._connect()
        self._track(1)
        try:
            try:
                # The socket timeout set by open() bounds each write as well.
                p._raw(data)
                p.device.shutdown(socket.SHUT_WR)
            except socket.timeout as e:
                raise PrinterTimeoutError(f"write to {self.endpoint} stalled for {self.timeout:g}s") from e
            except (ConnectionResetError, BrokenPipeError) as e:
                raise PrinterWriteError(f"connection to {self.endpoint} dropped during write: {e}") from e
            except OSError as e:
                raise PrinterWriteError(f"write to {self.endpoint} failed: {e}") from e
        finally:
            try:
                self._close(p)
            finally:
                self._track(-1)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info("Sent %d bytes to %s in %dms", len(data), self.endpoint, elapsed_ms)
        return DeliveryReport(host=self.host, port=self.port, bytes_sent=len(data), elapsed_ms=elapsed_ms)

    def check_reachable(self) -> tuple[bool, Optional[str]]:
        """
        Connect and close immediately.

        While a delivery holds the printer, no second connection is opened and the
        outcome of the most recent delivery is reported instead.

        Returns:
            (ok, reason) where reason is a short failure description or None.
        """
        if not self._slot.acquire(blocking=False):
            return self._last_ok, self._last_reason
        try:
            try:
                p = self._connect()
            except PrinterTransportError as e:
                self._remember(False, f"printer_unreachable: {e.kind}")
                return self._last_ok, self._last_reason
            self._track(1)
            try:
                self._close(p)
            finally:
                self._track(-1)
            self._remember(True)
            return True, None
        finally:
            self._slot.release()


__all__ = [
    "DeliveryReport",
    "PrinterConnectionError",
    "PrinterTimeoutError",
    "PrinterTransport",
    "PrinterTransportError",
    "PrinterWriteError",
]
