"""
Order Printer package

This module provides an application factory for the HTTP side of the print server:
- Configures logging via order_printer.core.logging
- Creates a Flask app exposing the job API and the health endpoint
- Wires a JobStore (and optionally a PrinterTransport / PrintWorker) into app.extensions
"""

from __future__ import annotations

import os
import uuid
from typing import Optional

from flask import Flask, g

from order_printer.core.config import default_db_path
from order_printer.core.db import JobStore, open_store
from order_printer.core.logging import configure_logging


EXTENSION_KEY = "order_printer"


def _set_request_id() -> None:
    """
    Assign a request ID for logging if not set by a filter elsewhere.
    """
    g.request_id = getattr(g, "request_id", uuid.uuid4().hex)


def create_app(
    config_overrides: Optional[dict] = None,
    store: Optional[JobStore] = None,
    transport=None,
    worker=None,
    configure_logs: bool = True,
) -> Flask:
    """
    Application factory.

    Parameters:
    - config_overrides: values to inject into app.config after defaults
    - store: JobStore to use; opened from DB_PATH when omitted
    - transport: optional PrinterTransport used by /healthz to check the printer
    - worker: optional in-process PrintWorker whose status /healthz reports
    - configure_logs: set up root logging (disable when the caller already did)

    Returns:
    - Flask app instance
    """
    app = Flask("order_printer")
    app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("ORDERPRINTER_MAX_CONTENT_LENGTH", 256 * 1024))
    app.config["DB_PATH"] = os.environ.get("ORDERPRINTER_DB_PATH", default_db_path())
    app.config["JOBS_LIST_MAX"] = int(os.environ.get("ORDERPRINTER_JOBS_LIST_MAX", 200))
    if config_overrides:
        app.config.update(config_overrides)

    if configure_logs:
        configure_logging()

    app.url_map.strict_slashes = False

    if store is None:
        store = open_store(app.config["DB_PATH"])
    app.extensions[EXTENSION_KEY] = {"store": store, "transport": transport, "worker": worker}

    @app.before_request
    def _before_request():
        _set_request_id()

    from order_printer.web import api_bp, health_bp

    app.register_blueprint(api_bp)
    app.register_blueprint(health_bp)

    app.logger.info("Order Printer app created (store=%s)", getattr(store, "path", type(store).__name__))
    return app


__all__ = ["EXTENSION_KEY", "create_app"]
