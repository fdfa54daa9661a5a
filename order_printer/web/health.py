from __future__ import annotations

"""
Health endpoints for Order Printer.

This blueprint exposes `/healthz`, reporting:
- Overall status ("ok" or "degraded")
- Job store reachability and pending/printing counts
- Background worker status and queue size, when a worker runs in-process
- Basic printer reachability (connect + close), when a transport is configured
"""

from typing import Any, Dict

from flask import Blueprint, current_app

from order_printer.core.db import StoreError
from order_printer.core.models import PENDING, PRINTING

health_bp = Blueprint("health", __name__)


@health_bp.get("/healthz")
def healthz():
    ext = current_app.extensions["order_printer"]
    status: Dict[str, Any] = {"status": "ok"}

    store = ext["store"]
    try:
        counts = store.count_by_status()
    except StoreError as e:
        status["store_ok"] = False
        status["status"] = "degraded"
        status["reason"] = f"store_unavailable: {e}"
        return status, 200
    status["store_ok"] = True
    status["pending"] = counts[PENDING]
    status["printing"] = counts[PRINTING]

    worker = ext.get("worker")
    if worker is not None:
        status.update(worker.worker_status())
        if not status.get("worker_alive"):
            status["status"] = "degraded"
            status["reason"] = "worker_not_running"

    transport = ext.get("transport")
    if transport is not None:
        ok, reason = transport.check_reachable()
        status["printer"] = transport.endpoint
        status["printer_ok"] = ok
        if not ok and status["status"] == "ok":
            status["status"] = "degraded"
            status["reason"] = reason

    return status, 200


__all__ = ["health_bp"]
