from __future__ import annotations

"""
JSON API (v1) for Order Printer.

Endpoints:
- POST /api/v1/print-jobs              : Queue a print job. Returns 202 + Location
- GET  /api/v1/print-jobs              : List jobs, newest first (?status=&limit=)
- GET  /api/v1/print-jobs/<job_id>     : Fetch one job
- POST /api/v1/print-jobs/<job_id>/retry : Re-enqueue a failed job as a new job (201)

Payload shape (POST /api/v1/print-jobs):
{
  "job_type": "order" | "test",
  "payload": {
    "table_number": int, "client_name": str?, "delivery_type": "balcao" | ...,
    "created_at": iso8601?, "notes": str?,
    "items": [{"name": str, "quantity": int, "price": decimal}]
  }
}
"""

from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request, url_for
from pydantic import ValidationError

from order_printer.core.db import JobStore, StoreError
from order_printer.core.models import FAILED, STATUSES, format_timestamp, sample_payload, utc_now
from . import schemas

api_bp = Blueprint("api", __name__, url_prefix="/api/v1")


def get_store() -> JobStore:
    return current_app.extensions["order_printer"]["store"]


def _json_error(msg: str, code: int = 400):
    return jsonify({"error": msg}), code


def _accepted(job, code: int):
    href = url_for("api.job_status", job_id=job.id)
    body = schemas.JobAcceptedResponse(
        id=job.id,
        job_type=job.job_type,
        status=job.status,
        retry_of=job.retry_of,
        links=schemas.Links(self=href),
    )
    resp = jsonify(body.model_dump())
    resp.status_code = code
    resp.headers["Location"] = href
    return resp


@api_bp.post("/print-jobs")
def submit_job():
    """
    Validate a job submission and insert it as pending; the worker picks it up from the store.
    """
    if not request.is_json:
        return _json_error("Expected application/json body", 415)

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _json_error("invalid JSON payload", 400)
    try:
        req = schemas.JobSubmitRequest.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        msg = first.get("msg") or str(e)
        return _json_error(f"{loc}: {msg}" if loc else msg, 400)

    payload: Dict[str, Any] = req.payload_dict() or sample_payload()
    if not payload.get("created_at"):
        payload["created_at"] = format_timestamp(utc_now())

    try:
        job = get_store().insert_job(payload, req.job_type)
    except StoreError as e:
        current_app.logger.exception("Failed to enqueue job: %s", e)
        return _json_error("job store unavailable", 503)

    current_app.logger.info("Queued %s job %s", job.job_type, job.id)
    return _accepted(job, 202)


@api_bp.get("/print-jobs")
def list_jobs():
    status = request.args.get("status") or None
    if status is not None and status not in STATUSES:
        return _json_error(f"unknown status: {status}", 400)
    max_limit = int(current_app.config.get("JOBS_LIST_MAX", 200))
    try:
        limit = max(1, min(int(request.args.get("limit", max_limit)), max_limit))
    except ValueError:
        return _json_error("limit must be an integer", 400)
    try:
        jobs = get_store().list_jobs(status=status, limit=limit)
    except StoreError as e:
        current_app.logger.exception("Failed to list jobs: %s", e)
        return _json_error("job store unavailable", 503)
    return jsonify({"jobs": [j.to_dict() for j in jobs], "count": len(jobs)})


@api_bp.get("/print-jobs/<job_id>")
def job_status(job_id: str):
    """
    Return job JSON, 404 if not found.
    """
    try:
        job = get_store().get_job(job_id)
    except StoreError:
        return _json_error("job store unavailable", 503)
    if job is None:
        return _json_error("not_found", 404)
    return jsonify(job.to_dict())


@api_bp.post("/print-jobs/<job_id>/retry")
def retry_job(job_id: str):
    """
    Create a new pending job from a failed one. The failed job is left untouched.
    """
    store = get_store()
    try:
        source = store.get_job(job_id)
        if source is None:
            return _json_error("not_found", 404)
        if source.status != FAILED:
            return _json_error(f"only failed jobs can be retried (job is {source.status})", 409)
        job = store.insert_job(source.payload, source.job_type, retry_of=source.id)
    except StoreError as e:
        current_app.logger.exception("Failed to retry job %s: %s", job_id, e)
        return _json_error("job store unavailable", 503)
    current_app.logger.info("Job %s re-enqueued as %s", job_id, job.id)
    return _accepted(job, 201)


__all__ = ["api_bp", "get_store"]
