"""
Core utilities for Order Printer.

This package groups non-Flask helpers used across the app:
- config: paths, JSON load/save, validated process Settings
- db: the SQLite job store and its insert change feed
- logging: Request ID aware logging filters/formatters and job event helpers
- models: job statuses, order payload parsing and the PrintJob record

Exports are explicit to keep static analyzers (e.g., Pyright) happy.
"""

from .config import (
    ConfigError,
    PrinterSettings,
    Settings,
    StoreSettings,
    TicketSettings,
    default_config_path,
    default_db_path,
    get_config_path,
    load_config,
    load_settings,
    load_store_settings,
)
from .db import (
    InsertSubscription,
    JobStore,
    SqliteJobStore,
    StoreError,
    open_store,
)
from .logging import (
    JsonFormatter,
    RequestIdFilter,
    configure_logging,
    log_job_event,
)
from .models import (
    COMPLETED,
    FAILED,
    PENDING,
    PRINTING,
    STATUSES,
    OrderItem,
    OrderPayload,
    PayloadError,
    PrintJob,
)

__all__ = [
    # config
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
    # db
    "InsertSubscription",
    "JobStore",
    "SqliteJobStore",
    "StoreError",
    "open_store",
    # logging
    "JsonFormatter",
    "RequestIdFilter",
    "configure_logging",
    "log_job_event",
    # models
    "COMPLETED",
    "FAILED",
    "PENDING",
    "PRINTING",
    "STATUSES",
    "OrderItem",
    "OrderPayload",
    "PayloadError",
    "PrintJob",
]
