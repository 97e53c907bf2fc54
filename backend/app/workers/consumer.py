"""
Queue Consumer — bounded worker pool over SQS

  ┌──────────── QueueConsumer ─────────────┐
  │  worker-0 ─┐                           │
  │  worker-1 ─┼─ receive() ── parse_job() │── tenant check ── engine.process() ── delete()
  │  worker-N ─┘      (long poll)          │
  └────────────────────────────────────────┘

Delivery contract (at-least-once):
  - A message is deleted only after processing succeeds.
  - A processing error leaves the message on the queue; it reappears after
    the visibility timeout and the redrive policy dead-letters it eventually.
  - Malformed messages and unknown tenants are deleted without processing
    (redelivery cannot fix them).
  - A message that arrives after the stop signal is released back to the
    queue unprocessed.
  - A receive error backs off before the next poll; the stop signal cuts
    the backoff short.

Shutdown:
  stop() signals every loop, waits for in-flight jobs to drain (bounded by
  shutdown_drain_seconds), then cancels the poll tasks. An AI call cannot
  be interrupted cooperatively, so a job still running at the ceiling is
  abandoned and its message is redelivered later.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID

from app.core.config import settings
from app.core.exceptions import InvalidJobError, TenantValidationError
from app.schemas.documents import MetricsResponse, ProcessingJob
from app.workers.jobs import parse_job
from app.workers.sqs import QueueMessage, SQSQueue

logger = logging.getLogger(__name__)

DRAIN_POLL_INTERVAL_SECONDS = 5.0
QUEUE_METRICS_ERROR = "Failed to retrieve queue metrics"


class JobProcessor(Protocol):
    async def process(self, job: ProcessingJob): ...


class TenantDirectory(Protocol):
    async def tenant_exists(self, tenant_id: UUID) -> bool: ...


# ---------------------------------------------------------------------------
# Pool state
# ---------------------------------------------------------------------------

@dataclass
class WorkerHandle:
    worker_id:   int
    task:        asyncio.Task | None = None
    active:      bool = True
    jobs_done:   int  = 0
    jobs_failed: int  = 0


@dataclass
class WorkerPoolState:
    """Everything the pool shares; owned by one QueueConsumer."""
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    in_flight:  set[str] = field(default_factory=set)   # job ids being processed
    workers:    list[WorkerHandle] = field(default_factory=list)
    running:    bool = False

    @property
    def active_workers(self) -> int:
        return sum(1 for w in self.workers if w.active)


# ---------------------------------------------------------------------------
# Consumer
# ---------------------------------------------------------------------------

class QueueConsumer:

    def __init__(
        self,
        queue:              SQSQueue | None,
        engine:             JobProcessor,
        tenants:            TenantDirectory,
        concurrency:        int | None = None,
        drain_timeout:      float | None = None,
        poll_error_backoff: float | None = None,
        drain_poll_interval: float = DRAIN_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._queue               = queue
        self._engine              = engine
        self._tenants             = tenants
        self._concurrency         = concurrency or settings.processing_concurrency
        self._drain_timeout       = settings.shutdown_drain_seconds if drain_timeout is None else drain_timeout
        self._poll_error_backoff  = settings.poll_error_backoff_seconds if poll_error_backoff is None else poll_error_backoff
        self._drain_poll_interval = drain_poll_interval
        self.state                = WorkerPoolState()

    @property
    def is_running(self) -> bool:
        return self.state.running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, concurrency: int | None = None) -> None:
        if self.state.running:
            logger.warning("Queue consumer already running")
            return

        self.state.stop_event.clear()
        self.state.running = True

        if self._queue is None:
            logger.warning("No queue URL configured | running in standalone mode (manual processing only)")
            return

        count = concurrency or self._concurrency
        for worker_id in range(count):
            handle = WorkerHandle(worker_id=worker_id)
            handle.task = asyncio.create_task(self._poll_loop(handle), name=f"queue-worker-{worker_id}")
            self.state.workers.append(handle)

        logger.info("Queue consumer started | workers=%d queue=%s", count, self._queue.queue_url)

    async def stop(self) -> None:
        if not self.state.running:
            return

        logger.info("Stopping queue consumer | in_flight=%d", len(self.state.in_flight))
        self.state.stop_event.set()
        for worker in self.state.workers:
            worker.active = False

        deadline = time.monotonic() + self._drain_timeout
        while self.state.in_flight and time.monotonic() < deadline:
            logger.info("Waiting for %d active job(s) to complete", len(self.state.in_flight))
            await asyncio.sleep(min(self._drain_poll_interval, max(deadline - time.monotonic(), 0)))

        if self.state.in_flight:
            logger.warning(
                "Force stopping | %d job(s) still in flight after %.0fs: %s",
                len(self.state.in_flight), self._drain_timeout, sorted(self.state.in_flight),
            )

        tasks = [w.task for w in self.state.workers if w.task is not None and not w.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self.state.workers.clear()
        self.state.running = False
        logger.info("Queue consumer stopped")

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _poll_loop(self, worker: WorkerHandle) -> None:
        logger.info("Worker %d polling", worker.worker_id)
        while worker.active and not self.state.stop_event.is_set():
            try:
                message = await self._queue.receive()
            except Exception as exc:
                logger.error(
                    "Queue receive failed | worker=%d error=%s: %s | retrying in %.0fs",
                    worker.worker_id, type(exc).__name__, exc, self._poll_error_backoff,
                )
                await self._backoff()
                continue

            if message is None:
                continue
            if self.state.stop_event.is_set():
                # the long poll outlived the stop signal; hand the message back unprocessed
                await self._release(message)
                break
            await self.handle_message(message, worker)

        logger.info("Worker %d stopped | done=%d failed=%d", worker.worker_id, worker.jobs_done, worker.jobs_failed)

    async def _backoff(self) -> None:
        try:
            await asyncio.wait_for(self.state.stop_event.wait(), timeout=self._poll_error_backoff)
        except asyncio.TimeoutError:
            pass

    async def handle_message(self, message: QueueMessage, worker: WorkerHandle | None = None) -> bool:
        """
        Process one message. Returns True when the message was acknowledged
        (processed, or dropped as unprocessable).
        """
        try:
            job = parse_job(message)
        except (InvalidJobError, TenantValidationError) as exc:
            logger.warning("Dropping message | id=%s reason=%s", message.message_id, exc)
            return await self._ack(message)

        try:
            known = await self._tenants.tenant_exists(job.tenant_id)
        except Exception as exc:
            # transient lookup failure; leave the message for redelivery
            logger.error("Tenant lookup failed | tenant=%s doc=%s error=%s", job.tenant_id, job.document_id, exc)
            return False
        if not known:
            logger.warning("Dropping message | id=%s reason=unknown tenant %s", message.message_id, job.tenant_id)
            return await self._ack(message)

        # the job stays in flight until its message is acknowledged
        self.state.in_flight.add(job.job_id)
        try:
            return await self._process_and_ack(job, message, worker)
        finally:
            self.state.in_flight.discard(job.job_id)

    async def _process_and_ack(self, job: ProcessingJob, message: QueueMessage, worker: WorkerHandle | None) -> bool:
        t0 = time.monotonic()
        try:
            await self._engine.process(job)
        except Exception as exc:
            if worker is not None:
                worker.jobs_failed += 1
            logger.error(
                "Job failed, leaving message for redelivery | job=%s doc=%s attempt=%d error=%s",
                job.job_id, job.document_id, job.delivery_attempt, exc,
            )
            return False

        elapsed_ms = int((time.monotonic() - t0) * 1000)
        if elapsed_ms > settings.max_processing_time_ms:
            logger.warning(
                "Job exceeded lease | job=%s elapsed_ms=%d lease_ms=%d | message may be redelivered",
                job.job_id, elapsed_ms, settings.max_processing_time_ms,
            )
        if worker is not None:
            worker.jobs_done += 1
        logger.info("Job done | job=%s doc=%s elapsed_ms=%d", job.job_id, job.document_id, elapsed_ms)
        return await self._ack(message)

    async def _release(self, message: QueueMessage) -> None:
        logger.info("Releasing message received during shutdown | id=%s", message.message_id)
        try:
            await self._queue.release(message.receipt_handle)
        except Exception as exc:
            logger.error("Failed to release message | id=%s error=%s", message.message_id, exc)

    async def _ack(self, message: QueueMessage) -> bool:
        try:
            await self._queue.delete(message.receipt_handle)
            return True
        except Exception as exc:
            logger.error("Failed to delete message | id=%s error=%s", message.message_id, exc)
            return False

    # ------------------------------------------------------------------
    # Manual processing + metrics
    # ------------------------------------------------------------------

    async def process_job(self, job: ProcessingJob):
        """Process a job outside the queue (HTTP trigger). Errors propagate."""
        if not await self._tenants.tenant_exists(job.tenant_id):
            raise TenantValidationError(f"Unknown tenant {job.tenant_id}")

        self.state.in_flight.add(job.job_id)
        try:
            return await self._engine.process(job)
        finally:
            self.state.in_flight.discard(job.job_id)

    async def metrics(self) -> MetricsResponse:
        queue = None
        queue_error = None
        if self._queue is None:
            queue_error = "no_queue_configured"
        else:
            try:
                queue = await self._queue.queue_depth()
            except Exception as exc:
                logger.error("Queue metrics failed: %s", exc)
                queue_error = QUEUE_METRICS_ERROR

        return MetricsResponse(
            timestamp=datetime.now(timezone.utc).isoformat(),
            in_flight_jobs=len(self.state.in_flight),
            active_workers=self.state.active_workers,
            total_workers=len(self.state.workers),
            is_running=self.state.running,
            queue=queue,
            queue_error=queue_error,
        )
