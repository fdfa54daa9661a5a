"""
Background worker, job state machine, and print orchestration for Order Printer.

This module owns:
- A FIFO queue drained by one consumer thread (the only printer slot)
- Startup reconciliation and drain of pending jobs, oldest first
- Live intake from the store's insert feed, plus a periodic pending rescan
- The per-job transition pending -> printing -> completed | failed

The worker never raises out of job processing: encoder, transport and store
errors end up as a failed job or a log line, and the next job runs.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Set

from order_printer.core.db import JobStore, StoreError
from order_printer.core.logging import log_job_event
from order_printer.core.models import COMPLETED, FAILED, PENDING, PRINTING, PrintJob, utc_now
from order_printer.printing.encoder import TicketEncoder
from order_printer.printing.transport import PrinterTransport, PrinterTransportError

logger = logging.getLogger(__name__)

STALE_PRINTING_MESSAGE = "interrupted: worker stopped during delivery"
RESUBSCRIBE_DELAY = 2.0

_STOP = object()


@dataclass
class WorkerStats:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    store_errors: int = 0
    last_error: Optional[str] = None


class PrintWorker:
    """
    Serializes print jobs onto one printer.

    Every intake path (startup drain, live feed, rescan) only puts jobs on the
    queue; a single consumer thread processes them one at a time, so at most one
    delivery is ever in flight.
    """

    def __init__(
        self,
        store: JobStore,
        transport: PrinterTransport,
        encoder: Optional[TicketEncoder] = None,
        *,
        rescan_interval: float = 60.0,
        resubscribe_delay: float = RESUBSCRIBE_DELAY,
        reconcile_stale: bool = True,
    ) -> None:
        self.store = store
        self.transport = transport
        self.encoder = encoder or TicketEncoder()
        self.rescan_interval = rescan_interval
        self.resubscribe_delay = resubscribe_delay
        self.reconcile_stale = reconcile_stale

        self.stats = WorkerStats()
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._queued_ids: Set[str] = set()
        self._queued_lock = threading.Lock()
        self._stop = threading.Event()
        self._subscription = None
        self._consumer: Optional[threading.Thread] = None
        self._intake: Optional[threading.Thread] = None
        self._rescanner: Optional[threading.Thread] = None
        self._in_flight: Optional[str] = None
        self._started = False

    # ----- Queueing ------------------------------------------------------------

    def enqueue(self, job: PrintJob) -> bool:
        """
        Put a job on the FIFO unless it is already waiting there.
        """
        with self._queued_lock:
            if job.id in self._queued_ids:
                return False
            self._queued_ids.add(job.id)
            self._queue.put(job)
        return True

    def enqueue_many(self, jobs: Iterable[PrintJob]) -> int:
        return sum(1 for job in jobs if self.enqueue(job))

    def enqueue_pending(self) -> int:
        """
        Queue every pending job in the store, oldest first.
        """
        try:
            jobs = self.store.list_pending()
        except StoreError as e:
            logger.error("Could not list pending jobs: %s", e)
            return 0
        count = self.enqueue_many(jobs)
        if count:
            logger.info("Queued %d pending job(s)", count)
        return count

    # ----- Job processing --------------------------------------------------------

    def _write_status(self, job: PrintJob, status: str, **fields: Any) -> Optional[bool]:
        """
        Persist one transition. Returns None if the store failed; never retried.
        """
        try:
            return self.store.update_status(job.id, status, **fields)
        except StoreError as e:
            self.stats.store_errors += 1
            log_job_event(
                logger,
                "job.store_write_failed",
                job,
                "Could not persist status %s for job %s: %s",
                status,
                job.id,
                e,
                level=logging.ERROR,
                status=status,
                error=str(e),
            )
            return None

    def process_job(self, job: PrintJob) -> Optional[str]:
        """
        Drive one job to a terminal status.

        Returns the terminal status written, or None when the job was skipped
        (already claimed, or the claim could not be persisted).
        """
        claimed = self._write_status(job, PRINTING, expected=PENDING)
        if claimed is None:
            # Left pending for the next rescan or restart.
            self.stats.skipped += 1
            return None
        if not claimed:
            self.stats.skipped += 1
            log_job_event(logger, "job.skipped", job, "Job %s is no longer pending; skipping", job.id)
            return None

        job.status = PRINTING
        self._in_flight = job.id
        log_job_event(logger, "job.picked_up", job, "Processing job %s (type=%s)", job.id, job.job_type)
        try:
            try:
                data = self.encoder.encode_job(job)
            except Exception as e:
                logger.exception("Encoding failed for job %s", job.id)
                return self._fail(job, f"encoding error: {e}")

            try:
                report = self.transport.send(data)
            except PrinterTransportError as e:
                return self._fail(job, f"{e.kind}: {e}")
            except Exception as e:
                logger.exception("Unexpected delivery failure for job %s", job.id)
                return self._fail(job, f"transport error: {e}")

            log_job_event(
                logger,
                "job.delivered",
                job,
                "Job %s delivered to %s (%d bytes)",
                job.id,
                self.transport.endpoint,
                report.bytes_sent,
                bytes=report.bytes_sent,
                elapsed_ms=report.elapsed_ms,
            )
            printed_at = utc_now()
            self._write_status(job, COMPLETED, printed_at=printed_at)
            job.status, job.printed_at = COMPLETED, printed_at
            self.stats.processed += 1
            self.stats.completed += 1
            log_job_event(logger, "job.completed", job, "Job %s completed", job.id)
            return COMPLETED
        finally:
            self._in_flight = None

    def _fail(self, job: PrintJob, message: str) -> str:
        self._write_status(job, FAILED, error_message=message)
        job.status, job.error_message = FAILED, message
        self.stats.processed += 1
        self.stats.failed += 1
        self.stats.last_error = message
        log_job_event(
            logger,
            "job.failed",
            job,
            "Job %s failed: %s",
            job.id,
            message,
            level=logging.ERROR,
            error=message,
        )
        return FAILED

    def _consume(self, q: "queue.Queue[Any]") -> None:
        """
        Consumer loop: the only place jobs are processed. Never raises.
        """
        while True:
            item = q.get()
            try:
                if item is _STOP or self._stop.is_set():
                    return
                with self._queued_lock:
                    self._queued_ids.discard(item.id)
                try:
                    self.process_job(item)
                except Exception as e:
                    logger.exception("Unexpected error processing job %s: %s", getattr(item, "id", "?"), e)
            finally:
                q.task_done()

    # ----- Intake ----------------------------------------------------------------

    def reconcile_stale_printing(self) -> int:
        """
        Fail jobs left in `printing` by a previous run; they may or may not have printed.
        """
        try:
            stale = self.store.list_jobs(status=PRINTING, limit=10_000)
        except StoreError as e:
            logger.error("Could not list stale printing jobs: %s", e)
            return 0
        count = 0
        for job in stale:
            if self._write_status(job, FAILED, error_message=STALE_PRINTING_MESSAGE, expected=PRINTING):
                count += 1
                log_job_event(
                    logger,
                    "job.failed",
                    job,
                    "Job %s was left printing by a previous run; marked failed",
                    job.id,
                    level=logging.WARNING,
                    status=FAILED,
                    error=STALE_PRINTING_MESSAGE,
                )
        return count

    def _intake_loop(self) -> None:
        """
        Follow the insert feed; re-open it (and rescan) whenever it drops.
        """
        subscription = self._subscription
        while not self._stop.is_set():
            try:
                if subscription is None:
                    subscription = self.store.subscribe_inserts()
                    self._subscription = subscription
                    # Cover anything inserted while the feed was down.
                    self.enqueue_pending()
                for job in subscription:
                    if self._stop.is_set():
                        break
                    if job.status != PENDING:
                        continue
                    logger.info("New print job %s received", job.id)
                    self.enqueue(job)
                if self._stop.is_set():
                    return
                logger.warning("Insert feed ended; resubscribing")
            except Exception as e:
                logger.error("Insert feed failed: %s; resubscribing in %.1fs", e, self.resubscribe_delay)
                self._stop.wait(self.resubscribe_delay)
            subscription = None

    def _rescan_loop(self) -> None:
        while not self._stop.wait(self.rescan_interval):
            self.enqueue_pending()

    # ----- Lifecycle ---------------------------------------------------------------

    def start(self) -> None:
        """
        Reconcile, subscribe, drain pending jobs, then start live intake.

        The feed is opened before the pending scan so no insert falls between them;
        a job seen by both is queued once and claimed once.
        """
        if self._started:
            return
        # A previous stop() may have timed out waiting for a delivery.
        for t in (self._consumer, self._intake, self._rescanner):
            if t is not None and t.is_alive():
                t.join()
        self._stop.clear()
        if self.reconcile_stale:
            count = self.reconcile_stale_printing()
            if count:
                logger.warning("Marked %d stale printing job(s) as failed", count)

        self._subscription = self.store.subscribe_inserts()
        pending = self.store.list_pending()
        if pending:
            logger.info("%d pending job(s) found at startup", len(pending))
        else:
            logger.info("No pending jobs at startup")
        self.enqueue_many(pending)

        self._consumer = threading.Thread(
            target=self._consume, args=(self._queue,), daemon=True, name="order-printer-worker"
        )
        self._consumer.start()
        self._intake = threading.Thread(target=self._intake_loop, daemon=True, name="order-printer-intake")
        self._intake.start()
        if self.rescan_interval and self.rescan_interval > 0:
            self._rescanner = threading.Thread(target=self._rescan_loop, daemon=True, name="order-printer-rescan")
            self._rescanner.start()
        self._started = True
        logger.info("Print worker started for printer %s", self.transport.endpoint)

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop intake, let the in-flight delivery finish, and join the threads.

        Jobs still queued stay pending in the store for the next startup drain.
        """
        if not self._started:
            return
        logger.info("Stopping print worker")
        self._stop.set()
        if self._subscription is not None:
            self._subscription.close()
        self._queue.put(_STOP)
        join_timeout = timeout if timeout is not None else self.transport.timeout * 2 + 5
        for t in (self._consumer, self._intake, self._rescanner):
            if t is not None:
                t.join(join_timeout)
        # Queued jobs are still pending in the store; the next start() drains them again.
        with self._queued_lock:
            self._queue = queue.Queue()
            self._queued_ids.clear()
        self._started = False
        logger.info("Print worker stopped")

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        finally:
            self.stop()

    def request_stop(self) -> None:
        """
        Ask run_forever() to return; safe to call from a signal handler.
        """
        self._stop.set()

    def worker_status(self) -> Dict[str, Any]:
        """
        Return basic worker/queue status.
        """
        alive = bool(self._consumer) and self._consumer.is_alive()  # type: ignore[union-attr]
        return {
            "worker_started": self._started,
            "worker_alive": alive,
            "queue_size": self._queue.qsize(),
            "in_flight": self._in_flight,
            "processed": self.stats.processed,
            "completed": self.stats.completed,
            "failed": self.stats.failed,
            "skipped": self.stats.skipped,
            "store_errors": self.stats.store_errors,
            "last_error": self.stats.last_error,
        }


__all__ = ["PrintWorker", "STALE_PRINTING_MESSAGE", "WorkerStats"]
