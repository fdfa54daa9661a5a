"""
Config utilities for Order Printer.

Responsibilities:
- Resolve the config path with environment and XDG support
- Provide JSON load/save helpers for the config file
- Merge the file with environment overrides into an immutable Settings object
- Validate printer/store/ticket settings and fail fast with ConfigError
"""

from __future__ import annotations

import codecs
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_PRINTER_PORT = 9100
DEFAULT_PRINTER_TIMEOUT = 10.0
DEFAULT_RESCAN_INTERVAL = 60.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_HEADER_LINES = ("CLUBE DE LAZER", "SHANGRI-LA")
SUPPORTED_LANGUAGES = ("pt", "en")


class ConfigError(ValueError):
    """Raised when the process configuration is missing or invalid."""


def default_config_path() -> str:
    """
    Resolve the default config path using:
    1) $XDG_CONFIG_HOME/orderprinter/config.json
    2) ~/.config/orderprinter/config.json
    """
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return str(Path(xdg) / "orderprinter" / "config.json")
    return str(Path.home() / ".config" / "orderprinter" / "config.json")


def default_db_path() -> str:
    """
    Resolve the default job database path using:
    1) $XDG_DATA_HOME/orderprinter/jobs.db
    2) ~/.local/share/orderprinter/jobs.db
    """
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return str(Path(xdg) / "orderprinter" / "jobs.db")
    return str(Path.home() / ".local" / "share" / "orderprinter" / "jobs.db")


def get_config_path() -> str:
    """
    Return the config path honoring ORDERPRINTER_CONFIG_PATH override.
    """
    return os.environ.get("ORDERPRINTER_CONFIG_PATH", default_config_path())


def load_config(path: Optional[str] = None) -> Optional[dict[str, Any]]:
    """
    Load the JSON config if it exists; return None if missing.

    Raises:
        json.JSONDecodeError if the file exists but contains invalid JSON.
        OSError for I/O errors other than missing file.
    """
    cfg_path = Path(path or get_config_path())
    if not cfg_path.exists():
        return None
    with cfg_path.open("r", encoding="utf-8") as f:
        return json.load(f)


@dataclass(frozen=True)
class PrinterSettings:
    host: str
    port: int = DEFAULT_PRINTER_PORT
    timeout: float = DEFAULT_PRINTER_TIMEOUT


@dataclass(frozen=True)
class StoreSettings:
    db_path: str = field(default_factory=default_db_path)
    poll_interval: float = DEFAULT_POLL_INTERVAL
    rescan_interval: float = DEFAULT_RESCAN_INTERVAL


@dataclass(frozen=True)
class TicketSettings:
    encoding: str = "latin-1"
    language: str = "pt"
    timezone: Optional[str] = None
    currency_prefix: str = "R$ "
    header_lines: Tuple[str, ...] = DEFAULT_HEADER_LINES


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, built once at startup and passed explicitly."""

    printer: PrinterSettings
    store: StoreSettings = field(default_factory=StoreSettings)
    ticket: TicketSettings = field(default_factory=TicketSettings)
    json_logs: bool = False


def _first(env: Mapping[str, str], *names: str) -> Optional[str]:
    for name in names:
        val = env.get(name)
        if val is not None and str(val).strip() != "":
            return str(val).strip()
    return None


def _parse_port(raw: Any) -> int:
    try:
        port = int(str(raw).strip())
    except (TypeError, ValueError):
        raise ConfigError(f"Printer port must be a positive integer, got {raw!r}") from None
    if port <= 0 or port > 65535:
        raise ConfigError(f"Printer port must be a positive integer, got {raw!r}")
    return port


def _parse_positive_float(name: str, raw: Any, *, allow_zero: bool = False) -> float:
    try:
        val = float(str(raw).strip())
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if val < 0 or (val == 0 and not allow_zero):
        raise ConfigError(f"{name} must be {'non-negative' if allow_zero else 'positive'}, got {raw!r}")
    return val


def _validate_encoding(name: str) -> str:
    try:
        info = codecs.lookup(name)
    except LookupError:
        raise ConfigError(f"Unknown ticket encoding: {name!r}") from None
    # The printer font table addresses one byte per glyph.
    try:
        sample = "Aã".encode(info.name, errors="replace")
    except Exception:
        raise ConfigError(f"Unusable ticket encoding: {name!r}") from None
    if len(sample) != 2:
        raise ConfigError(f"Ticket encoding must be single-byte, got {name!r}")
    return info.name


def _validate_timezone(name: Any) -> Optional[str]:
    if not name:
        return None
    name = str(name)
    if name.upper() == "UTC":
        return name
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"Unknown ticket time zone: {name!r}") from None
    return name


def _file_config() -> dict[str, Any]:
    path = get_config_path()
    try:
        data = load_config(path)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a JSON object")
    return data


def load_store_settings(
    file_config: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> StoreSettings:
    """
    Build the job store settings alone; tools that only touch the store do not
    need a printer configured.
    """
    env = os.environ if env is None else env
    cfg = _file_config() if file_config is None else dict(file_config)
    return StoreSettings(
        db_path=_first(env, "ORDERPRINTER_DB_PATH") or str(cfg.get("db_path") or default_db_path()),
        poll_interval=_parse_positive_float(
            "Poll interval",
            _first(env, "ORDERPRINTER_POLL_INTERVAL") or cfg.get("poll_interval", DEFAULT_POLL_INTERVAL),
        ),
        rescan_interval=_parse_positive_float(
            "Rescan interval",
            _first(env, "ORDERPRINTER_RESCAN_INTERVAL") or cfg.get("rescan_interval", DEFAULT_RESCAN_INTERVAL),
            allow_zero=True,
        ),
    )


def load_settings(
    file_config: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Build validated Settings from the JSON config (if any) and the environment.

    Environment values win over the file. Raises ConfigError when the config file
    is unreadable, the printer host is absent, the port is not a positive integer,
    or ticket options are invalid.
    """
    env = os.environ if env is None else env
    if file_config is None:
        file_config = _file_config()
    cfg = dict(file_config)

    host = _first(env, "ORDERPRINTER_PRINTER_HOST", "PRINTER_IP") or str(cfg.get("printer_host") or "").strip()
    if not host:
        raise ConfigError("Printer host is missing. Set ORDERPRINTER_PRINTER_HOST (e.g. 192.168.15.31).")

    port_raw = _first(env, "ORDERPRINTER_PRINTER_PORT", "PRINTER_PORT") or cfg.get("printer_port", DEFAULT_PRINTER_PORT)
    port = _parse_port(port_raw)

    timeout_raw = _first(env, "ORDERPRINTER_PRINTER_TIMEOUT") or cfg.get("printer_timeout", DEFAULT_PRINTER_TIMEOUT)
    timeout = _parse_positive_float("Printer timeout", timeout_raw)

    store = load_store_settings(cfg, env)

    language = (_first(env, "ORDERPRINTER_TICKET_LANGUAGE") or str(cfg.get("ticket_language") or "pt")).lower()
    if language not in SUPPORTED_LANGUAGES:
        raise ConfigError(f"Unsupported ticket language: {language!r} (use one of {', '.join(SUPPORTED_LANGUAGES)})")

    header = cfg.get("header_lines")
    header_lines = tuple(str(h) for h in header) if isinstance(header, (list, tuple)) and header else DEFAULT_HEADER_LINES

    ticket = TicketSettings(
        encoding=_validate_encoding(_first(env, "ORDERPRINTER_TICKET_ENCODING") or str(cfg.get("ticket_encoding") or "latin-1")),
        language=language,
        timezone=_validate_timezone(_first(env, "ORDERPRINTER_TICKET_TIMEZONE") or cfg.get("ticket_timezone")),
        currency_prefix=str(cfg.get("currency_prefix", "R$ ")),
        header_lines=header_lines,
    )

    json_logs = (_first(env, "ORDERPRINTER_JSON_LOGS") or str(cfg.get("json_logs", "false"))).lower() in ("1", "true", "yes")

    return Settings(
        printer=PrinterSettings(host=host, port=port, timeout=timeout),
        store=store,
        ticket=ticket,
        json_logs=json_logs,
    )


__all__ = [
    "ConfigError",
    "PrinterSettings",
    "Settings",
    "StoreSettings",
    "TicketSettings",
    "default_config_path",
    "default_db_path",
    "get_config_path",
    "load_config",
    "load_settings",
    "load_store_settings",
]
