"""
Command line entry point for Order Printer.

Subcommands:
- worker      : run the print worker until SIGINT/SIGTERM
- web         : serve the JSON API (optionally with the worker in-process)
- enqueue     : insert a job from a JSON file ("-" reads stdin)
- jobs        : list jobs, newest first
- test-print  : queue a test ticket, or send one straight to the printer

A `.env` file in the working directory is loaded before settings are read.
Configuration errors exit with status 2.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from order_printer.core.config import ConfigError, load_settings, load_store_settings
from order_printer.core.db import StoreError, open_store
from order_printer.core.logging import configure_logging
from order_printer.core.models import STATUSES, TEST_JOB, OrderPayload, format_timestamp, sample_payload, utc_now
from order_printer.printing.encoder import TicketEncoder
from order_printer.printing.transport import PrinterTransport, PrinterTransportError
from order_printer.printing.worker import PrintWorker
from order_printer.web.schemas import JobSubmitRequest

logger = logging.getLogger("order_printer.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def _build_worker(settings, store) -> PrintWorker:
    transport = PrinterTransport(settings.printer)
    transport.check_resolvable()
    return PrintWorker(
        store,
        transport,
        TicketEncoder(settings.ticket),
        rescan_interval=settings.store.rescan_interval,
    )


def _install_signal_handlers(worker: PrintWorker) -> None:
    def _handler(signum, _frame):
        logger.info("Received signal %s; stopping", signum)
        worker.request_stop()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def cmd_worker(args: argparse.Namespace) -> int:
    settings = load_settings()
    configure_logging(settings.json_logs)
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    store = open_store(settings.store.db_path, settings.store.poll_interval)
    try:
        worker = _build_worker(settings, store)
        _install_signal_handlers(worker)
        worker.run_forever()
    finally:
        store.close()
    return EXIT_OK


def cmd_web(args: argparse.Namespace) -> int:
    from order_printer import create_app

    if args.with_worker:
        settings = load_settings()
        configure_logging(settings.json_logs)
        store_settings = settings.store
    else:
        settings = None
        store_settings = load_store_settings()
        configure_logging()

    store = open_store(store_settings.db_path, store_settings.poll_interval)
    worker = None
    transport = None
    if settings is not None:
        worker = _build_worker(settings, store)
        transport = worker.transport
        worker.start()
    try:
        app = create_app(store=store, transport=transport, worker=worker, configure_logs=False)
        app.run(host=args.host, port=args.port, debug=False, use_reloader=False)
    finally:
        if worker is not None:
            worker.stop()
        store.close()
    return EXIT_OK


def _read_document(path: str) -> Any:
    if path == "-":
        return json.load(sys.stdin)
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def cmd_enqueue(args: argparse.Namespace) -> int:
    try:
        doc = _read_document(args.file)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Could not read {args.file}: {e}", file=sys.stderr)
        return EXIT_FAILURE
    if not isinstance(doc, dict):
        print("Expected a JSON object", file=sys.stderr)
        return EXIT_FAILURE
    # A bare order payload is accepted as well as a full submission.
    if "payload" not in doc and "job_type" not in doc:
        doc = {"job_type": args.job_type, "payload": doc}
    try:
        req = JobSubmitRequest.model_validate(doc)
    except ValidationError as e:
        print(f"Invalid job: {e}", file=sys.stderr)
        return EXIT_FAILURE

    payload: Dict[str, Any] = req.payload_dict() or sample_payload()
    if not payload.get("created_at"):
        payload["created_at"] = format_timestamp(utc_now())

    store_settings = load_store_settings()
    store = open_store(store_settings.db_path, store_settings.poll_interval)
    try:
        job = store.insert_job(payload, req.job_type)
    finally:
        store.close()
    print(job.id)
    return EXIT_OK


def _format_row(job) -> str:
    created = format_timestamp(job.created_at) or "-"
    line = f"{job.id}  {job.status:<9}  {job.job_type:<5}  {created}"
    if job.error_message:
        line += f"  {job.error_message}"
    return line


def cmd_jobs(args: argparse.Namespace) -> int:
    store_settings = load_store_settings()
    store = open_store(store_settings.db_path, store_settings.poll_interval)
    try:
        jobs = store.list_jobs(status=args.status, limit=args.limit)
    finally:
        store.close()
    if args.json:
        print(json.dumps([j.to_dict() for j in jobs], indent=2))
        return EXIT_OK
    if not jobs:
        print("No jobs")
        return EXIT_OK
    for job in jobs:
        print(_format_row(job))
    return EXIT_OK


def cmd_test_print(args: argparse.Namespace) -> int:
    settings = load_settings()
    configure_logging(settings.json_logs)

    if args.direct:
        transport = PrinterTransport(settings.printer)
        transport.check_resolvable()
        data = TicketEncoder(settings.ticket).encode(OrderPayload.from_dict(sample_payload()))
        try:
            report = transport.send(data)
        except PrinterTransportError as e:
            print(f"Test print failed: {e.kind}: {e}", file=sys.stderr)
            return EXIT_FAILURE
        print(f"Sent {report.bytes_sent} bytes to {report.host}:{report.port} in {report.elapsed_ms} ms")
        return EXIT_OK

    store = open_store(settings.store.db_path, settings.store.poll_interval)
    try:
        job = store.insert_job(sample_payload(), TEST_JOB)
    finally:
        store.close()
    print(job.id)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="order-printer",
        description="Print order tickets on a network ESC/POS printer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("worker", help="Run the print worker")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.set_defaults(func=cmd_worker)

    p = sub.add_parser("web", help="Serve the JSON API")
    p.add_argument("--host", default=os.environ.get("ORDERPRINTER_HOST", "127.0.0.1"))
    p.add_argument("--port", type=int, default=int(os.environ.get("ORDERPRINTER_PORT", "5000")))
    p.add_argument("--with-worker", action="store_true", help="Also run the print worker in this process")
    p.set_defaults(func=cmd_web)

    p = sub.add_parser("enqueue", help="Queue a job from a JSON file")
    p.add_argument("file", help='Path to a JSON job or order payload ("-" for stdin)')
    p.add_argument("--job-type", default="order", choices=["order", "test"])
    p.set_defaults(func=cmd_enqueue)

    p = sub.add_parser("jobs", help="List jobs, newest first")
    p.add_argument("--status", choices=list(STATUSES))
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    p.set_defaults(func=cmd_jobs)

    p = sub.add_parser("test-print", help="Print a test ticket")
    p.add_argument("--direct", action="store_true", help="Send straight to the printer instead of queueing")
    p.set_defaults(func=cmd_test_print)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except StoreError as e:
        print(f"Job store error: {e}", file=sys.stderr)
        return EXIT_CONFIG if args.command == "worker" else EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
