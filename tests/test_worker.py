import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from order_printer.core.db import StoreError, open_store
from order_printer.core.models import COMPLETED, FAILED, PENDING, PRINTING
from order_printer.printing.transport import DeliveryReport, PrinterConnectionError, PrinterTimeoutError
from order_printer.printing.worker import STALE_PRINTING_MESSAGE, PrintWorker

BASE = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeTransport:
    """Records deliveries and the peak number of concurrent sends."""

    endpoint = "fake-printer:9100"
    timeout = 1.0

    def __init__(self, fail: Optional[Exception] = None, delay: float = 0.0, gate: Optional[threading.Event] = None):
        self.fail = fail
        self.delay = delay
        self.gate = gate
        self.sent: List[bytes] = []
        self.entered = threading.Event()
        self._lock = threading.Lock()
        self._open = 0
        self.max_open = 0

    def send(self, data: bytes) -> DeliveryReport:
        with self._lock:
            self._open += 1
            self.max_open = max(self.max_open, self._open)
        self.entered.set()
        try:
            if self.gate is not None:
                self.gate.wait(5)
            if self.delay:
                time.sleep(self.delay)
            if self.fail is not None:
                raise self.fail
            self.sent.append(data)
            return DeliveryReport(host="fake-printer", port=9100, bytes_sent=len(data), elapsed_ms=1)
        finally:
            with self._lock:
                self._open -= 1


class StoreProxy:
    """Wraps a real store and injects StoreError on selected status writes."""

    def __init__(self, store, fail_on=(), broken_feeds: int = 0):
        self._store = store
        self.fail_on = set(fail_on)
        self.broken_feeds = broken_feeds

    def update_status(self, job_id, status, **kw):
        if status in self.fail_on:
            raise StoreError(f"disk full while writing {status}")
        return self._store.update_status(job_id, status, **kw)

    def subscribe_inserts(self):
        if self.broken_feeds:
            self.broken_feeds -= 1
            raise StoreError("feed unavailable")
        return self._store.subscribe_inserts()

    def __getattr__(self, name):
        return getattr(self._store, name)


@pytest.fixture
def store(tmp_path):
    s = open_store(str(tmp_path / "jobs.db"), poll_interval=0.05)
    yield s
    s.close()


def _order(table: int, items=None):
    return {
        "table_number": table,
        "created_at": BASE.isoformat(),
        "items": items if items is not None else [{"name": "Burger", "quantity": 2, "price": "12.00"}],
    }


def _wait_until(pred, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


def _tables(transport: FakeTransport) -> List[int]:
    out = []
    for data in transport.sent:
        marker = data.index(b"MESA ") + len(b"MESA ")
        out.append(int(data[marker:data.index(b"\n", marker)]))
    return out


def test_successful_job_goes_pending_printing_completed(store):
    transport = FakeTransport()
    worker = PrintWorker(store, transport)
    job = store.insert_job(_order(5))

    assert worker.process_job(job) == COMPLETED

    done = store.get_job(job.id)
    assert store.job_history(job.id) == [PENDING, PRINTING, COMPLETED]
    assert done.printed_at is not None
    assert done.error_message is None
    assert b"TOTAL: R$ 24,00" in transport.sent[0]


def test_transport_failure_fails_job_with_kind(store):
    worker = PrintWorker(store, FakeTransport(fail=PrinterConnectionError("cannot connect to 10.0.0.9:9100")))
    job = store.insert_job(_order(1))

    assert worker.process_job(job) == FAILED

    failed = store.get_job(job.id)
    assert store.job_history(job.id) == [PENDING, PRINTING, FAILED]
    assert failed.error_message == "connection error: cannot connect to 10.0.0.9:9100"
    assert failed.printed_at is None
    assert worker.stats.failed == 1


def test_timeout_failure_message(store):
    worker = PrintWorker(store, FakeTransport(fail=PrinterTimeoutError("write stalled")))
    job = store.insert_job(_order(1))
    worker.process_job(job)
    assert store.get_job(job.id).error_message == "timeout: write stalled"


def test_encoding_failure_fails_job_and_skips_delivery(store):
    transport = FakeTransport()
    worker = PrintWorker(store, transport)
    job = store.insert_job(_order(1, items=[{"name": "X", "quantity": 0, "price": "1"}]))

    assert worker.process_job(job) == FAILED
    assert transport.sent == []
    assert store.get_job(job.id).error_message.startswith("encoding error: ")


def test_unknown_job_type_fails(store):
    worker = PrintWorker(store, FakeTransport())
    job = store.insert_job(_order(1), job_type="label")
    worker.process_job(job)
    failed = store.get_job(job.id)
    assert failed.status == FAILED
    assert "unknown job type" in failed.error_message


def test_already_claimed_job_is_skipped(store):
    transport = FakeTransport()
    worker = PrintWorker(store, transport)
    job = store.insert_job(_order(1))
    store.update_status(job.id, PRINTING, expected=PENDING)

    assert worker.process_job(job) is None
    assert transport.sent == []
    assert worker.stats.skipped == 1


def test_completion_write_failure_is_logged_and_not_fatal(store):
    proxy = StoreProxy(store, fail_on={COMPLETED})
    transport = FakeTransport()
    worker = PrintWorker(proxy, transport)
    first = store.insert_job(_order(1))
    second = store.insert_job(_order(2))

    assert worker.process_job(first) == COMPLETED
    assert worker.process_job(second) == COMPLETED
    assert len(transport.sent) == 2
    assert worker.stats.store_errors == 2
    # The write was attempted once and not retried.
    assert store.get_job(first.id).status == PRINTING


def test_claim_write_failure_leaves_job_pending(store):
    proxy = StoreProxy(store, fail_on={PRINTING})
    transport = FakeTransport()
    worker = PrintWorker(proxy, transport)
    job = store.insert_job(_order(1))

    assert worker.process_job(job) is None
    assert transport.sent == []
    assert store.get_job(job.id).status == PENDING


def test_enqueue_deduplicates_by_id(store):
    worker = PrintWorker(store, FakeTransport())
    job = store.insert_job(_order(1))
    assert worker.enqueue(job) is True
    assert worker.enqueue(job) is False
    assert worker.worker_status()["queue_size"] == 1


def test_startup_drain_in_created_at_order(store):
    transport = FakeTransport()
    third = store.insert_job(_order(3), created_at=BASE + timedelta(minutes=3))
    first = store.insert_job(_order(1), created_at=BASE + timedelta(minutes=1))
    second = store.insert_job(_order(2), created_at=BASE + timedelta(minutes=2))

    worker = PrintWorker(store, transport, rescan_interval=0)
    worker.start()
    try:
        assert _wait_until(lambda: len(transport.sent) == 3)
    finally:
        worker.stop()

    assert _tables(transport) == [1, 2, 3]
    for job in (first, second, third):
        assert store.job_history(job.id) == [PENDING, PRINTING, COMPLETED]


def test_live_jobs_never_overlap(store):
    transport = FakeTransport(delay=0.05)
    worker = PrintWorker(store, transport, rescan_interval=0)
    worker.start()
    try:
        a = store.insert_job(_order(1))
        b = store.insert_job(_order(2))
        assert _wait_until(lambda: all(store.get_job(j.id).status == COMPLETED for j in (a, b)))
    finally:
        worker.stop()

    assert transport.max_open == 1
    assert _tables(transport) == [1, 2]


def test_live_jobs_queue_behind_startup_drain(store):
    gate = threading.Event()
    transport = FakeTransport(gate=gate)
    store.insert_job(_order(1), created_at=BASE)
    store.insert_job(_order(2), created_at=BASE + timedelta(seconds=1))

    worker = PrintWorker(store, transport, rescan_interval=0)
    worker.start()
    try:
        assert transport.entered.wait(5)
        store.insert_job(_order(3))
        gate.set()
        assert _wait_until(lambda: len(transport.sent) == 3)
    finally:
        worker.stop()

    assert _tables(transport) == [1, 2, 3]


def test_stale_printing_jobs_are_failed_on_start(store):
    transport = FakeTransport()
    stale = store.insert_job(_order(1))
    store.update_status(stale.id, PRINTING, expected=PENDING)

    worker = PrintWorker(store, transport, rescan_interval=0)
    worker.start()
    worker.stop()

    job = store.get_job(stale.id)
    assert job.status == FAILED
    assert job.error_message == STALE_PRINTING_MESSAGE
    assert transport.sent == []


def test_stop_leaves_queued_jobs_pending(store):
    gate = threading.Event()
    transport = FakeTransport(gate=gate)
    first = store.insert_job(_order(1), created_at=BASE)
    second = store.insert_job(_order(2), created_at=BASE + timedelta(seconds=1))

    worker = PrintWorker(store, transport, rescan_interval=0)
    worker.start()
    assert transport.entered.wait(5)
    stopper = threading.Thread(target=worker.stop)
    stopper.start()
    time.sleep(0.05)
    gate.set()
    stopper.join(5)

    assert store.get_job(first.id).status == COMPLETED
    assert store.get_job(second.id).status == PENDING
    assert worker.worker_status()["worker_alive"] is False


def test_worker_restarts_after_stop(store):
    gate = threading.Event()
    transport = FakeTransport(gate=gate)
    jobs = [store.insert_job(_order(n), created_at=BASE + timedelta(seconds=n)) for n in (1, 2, 3)]

    worker = PrintWorker(store, transport, rescan_interval=0)
    worker.start()
    assert transport.entered.wait(5)
    stopper = threading.Thread(target=worker.stop)
    stopper.start()
    time.sleep(0.05)
    gate.set()
    stopper.join(5)
    assert [store.get_job(j.id).status for j in jobs] == [COMPLETED, PENDING, PENDING]

    worker.start()
    try:
        late = store.insert_job(_order(4), created_at=BASE + timedelta(seconds=4))
        jobs.append(late)
        assert _wait_until(lambda: all(store.get_job(j.id).status == COMPLETED for j in jobs))
        assert worker.worker_status()["worker_alive"] is True
    finally:
        worker.stop()

    assert _tables(transport) == [1, 2, 3, 4]
    assert transport.max_open == 1
    assert worker.worker_status()["queue_size"] == 0


def test_broken_feed_is_reopened_and_rescanned(store):
    proxy = StoreProxy(store, broken_feeds=0)
    transport = FakeTransport()
    worker = PrintWorker(proxy, transport, rescan_interval=0, resubscribe_delay=0.05)
    worker.start()
    try:
        # Break the live feed; the intake thread must reopen it and rescan.
        proxy.broken_feeds = 1
        worker._subscription.close()
        job = store.insert_job(_order(7))
        assert _wait_until(lambda: store.get_job(job.id).status == COMPLETED)
    finally:
        worker.stop()
    assert _tables(transport) == [7]


def test_periodic_rescan_picks_up_missed_jobs(store):
    transport = FakeTransport()
    worker = PrintWorker(store, transport, rescan_interval=0.1)
    worker.start()
    try:
        # Simulate a job the feed missed: advance the subscription past it.
        worker._subscription._cursor = 10_000
        job = store.insert_job(_order(8))
        assert _wait_until(lambda: store.get_job(job.id).status == COMPLETED)
    finally:
        worker.stop()


def test_worker_status_reports_counters(store):
    worker = PrintWorker(store, FakeTransport(fail=PrinterConnectionError("refused")))
    worker.process_job(store.insert_job(_order(1)))
    status = worker.worker_status()
    assert status["worker_started"] is False
    assert status["processed"] == 1
    assert status["failed"] == 1
    assert status["last_error"] == "connection error: refused"
    assert status["in_flight"] is None


def test_job_events_are_logged_with_fields(store, caplog):
    caplog.set_level(logging.INFO, logger="order_printer.printing.worker")
    worker = PrintWorker(store, FakeTransport(fail=PrinterConnectionError("refused")))
    job = store.insert_job(_order(1))
    worker.process_job(job)

    events = [getattr(r, "event", None) for r in caplog.records]
    assert events.count("job.picked_up") == 1
    assert events.count("job.failed") == 1
    failed = next(r for r in caplog.records if getattr(r, "event", None) == "job.failed")
    assert failed.job_id == job.id
    assert failed.error == "connection error: refused"
    assert failed.levelno == logging.ERROR
