"""
Unit Tests — queue message parsing + QueueConsumer
══════════════════════════════════════════════════
The SQS client is an AsyncMock; the engine is an AsyncMock or the real
engine over in-memory fakes.

Coverage targets:
  ✅ attributes beat body, body beats storage key
  ✅ SNS envelope and S3 event notification bodies
  ✅ missing documentId / vertical → InvalidJobError
  ✅ unresolvable tenant → TenantValidationError
  ✅ unknown tenant → acknowledged, never processed
  ✅ processing error → NOT acknowledged
  ✅ success → acknowledged exactly once
  ✅ receive error → back-off cut short by stop()
  ✅ stop() drains in-flight jobs (bounded)
  ✅ message received after stop() → released, never processed
  ✅ metrics with / without / failing queue
"""

from __future__ import annotations

import asyncio
import json
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.exceptions import InvalidJobError, TenantValidationError
from app.schemas.documents import QueueDepth, Vertical
from app.workers.consumer import QUEUE_METRICS_ERROR, QueueConsumer
from app.workers.jobs import parse_job
from app.workers.sqs import QueueMessage

TENANT = "11111111-2222-3333-4444-555555555555"
DOC    = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"


def _message(body=None, attributes=None, receive_count: int = 1, message_id: str = "m-1") -> QueueMessage:
    return QueueMessage(
        message_id=message_id,
        receipt_handle=f"rh-{message_id}",
        body=json.dumps(body) if isinstance(body, dict) else (body or ""),
        attributes=attributes or {},
        receive_count=receive_count,
    )


def _queue() -> MagicMock:
    queue = MagicMock()
    queue.queue_url = "https://sqs.example/queue"
    queue.receive = AsyncMock(return_value=None)
    queue.delete = AsyncMock()
    queue.release = AsyncMock()
    queue.queue_depth = AsyncMock(return_value=QueueDepth(available=3, in_flight=1, delayed=0))
    return queue


def _tenants(*known: str) -> MagicMock:
    tenants = MagicMock()
    tenants.tenant_exists = AsyncMock(side_effect=lambda tid: str(tid) in known)
    return tenants


# ─────────────────────────────────────────────────────────────────────────────
# parse_job
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestParseJob:

    def test_body_fields(self):
        job = parse_job(_message(
            {"documentId": DOC, "vertical": "accounting", "tenantId": TENANT,
             "storageKey": f"accounting/{TENANT}/{DOC}.pdf", "sizeBytes": "2048"},
            receive_count=3,
        ))

        assert job.document_id == uuid.UUID(DOC)
        assert job.tenant_id == uuid.UUID(TENANT)
        assert job.vertical is Vertical.ACCOUNTING
        assert job.size_bytes == 2048
        assert job.delivery_attempt == 3
        assert job.receipt_token == "rh-m-1"

    def test_organization_id_is_tenant(self):
        job = parse_job(_message({"documentId": DOC, "vertical": "legal", "organizationId": TENANT}))

        assert job.tenant_id == uuid.UUID(TENANT)
        assert job.vertical is Vertical.LEGAL

    def test_attributes_take_precedence(self):
        other_tenant = "99999999-2222-3333-4444-555555555555"
        job = parse_job(_message(
            {"documentId": DOC, "vertical": "accounting", "tenantId": other_tenant},
            attributes={"tenantId": TENANT},
        ))

        assert job.tenant_id == uuid.UUID(TENANT)

    def test_fields_from_storage_key(self):
        job = parse_job(_message({"storageKey": f"legal-docs/{TENANT}/{DOC}.docx"}))

        assert job.vertical is Vertical.LEGAL
        assert job.tenant_id == uuid.UUID(TENANT)
        assert job.document_id == uuid.UUID(DOC)

    def test_sns_envelope(self):
        inner = {"documentId": DOC, "vertical": "accounting", "tenantId": TENANT}
        job = parse_job(_message({"Type": "Notification", "Message": json.dumps(inner)}))

        assert job.document_id == uuid.UUID(DOC)

    def test_s3_event_notification(self):
        body = {"Records": [{"s3": {"bucket": {"name": "documents"},
                                    "object": {"key": f"accounting/{TENANT}/{DOC}.pdf", "size": 512}}}]}
        job = parse_job(_message(body))

        assert job.storage_key == f"accounting/{TENANT}/{DOC}.pdf"
        assert job.size_bytes == 512

    @pytest.mark.parametrize("body", [
        {"vertical": "accounting", "tenantId": TENANT},
        {"documentId": DOC, "tenantId": TENANT},
        {"documentId": DOC, "vertical": "marketing", "tenantId": TENANT},
        {"documentId": "not-a-uuid", "vertical": "accounting", "tenantId": TENANT},
        "not json at all",
    ])
    def test_invalid_job(self, body):
        with pytest.raises(InvalidJobError):
            parse_job(_message(body))

    @pytest.mark.parametrize("tenant", [None, "acme-corp"])
    def test_unresolvable_tenant(self, tenant):
        body = {"documentId": DOC, "vertical": "accounting"}
        if tenant:
            body["tenantId"] = tenant

        with pytest.raises(TenantValidationError):
            parse_job(_message(body))


# ─────────────────────────────────────────────────────────────────────────────
# handle_message
# ─────────────────────────────────────────────────────────────────────────────

VALID_BODY = {"documentId": DOC, "vertical": "accounting", "tenantId": TENANT}


@pytest.mark.unit
class TestHandleMessage:

    async def test_success_acknowledged(self):
        queue, engine = _queue(), MagicMock(process=AsyncMock())
        consumer = QueueConsumer(queue, engine, _tenants(TENANT))

        assert await consumer.handle_message(_message(VALID_BODY)) is True

        engine.process.assert_awaited_once()
        queue.delete.assert_awaited_once_with("rh-m-1")
        assert consumer.state.in_flight == set()

    async def test_processing_error_not_acknowledged(self):
        queue = _queue()
        engine = MagicMock(process=AsyncMock(side_effect=RuntimeError("AI down")))
        consumer = QueueConsumer(queue, engine, _tenants(TENANT))

        assert await consumer.handle_message(_message(VALID_BODY)) is False

        queue.delete.assert_not_awaited()
        assert consumer.state.in_flight == set()

    async def test_unknown_tenant_dropped_without_processing(self):
        queue, engine = _queue(), MagicMock(process=AsyncMock())
        consumer = QueueConsumer(queue, engine, _tenants())

        assert await consumer.handle_message(_message(VALID_BODY)) is True

        engine.process.assert_not_awaited()
        queue.delete.assert_awaited_once_with("rh-m-1")

    async def test_malformed_message_dropped(self):
        queue, engine = _queue(), MagicMock(process=AsyncMock())
        consumer = QueueConsumer(queue, engine, _tenants(TENANT))

        await consumer.handle_message(_message({"vertical": "accounting"}))

        engine.process.assert_not_awaited()
        queue.delete.assert_awaited_once()

    async def test_tenant_lookup_error_left_for_redelivery(self):
        queue, engine = _queue(), MagicMock(process=AsyncMock())
        tenants = MagicMock(tenant_exists=AsyncMock(side_effect=ConnectionError("db down")))
        consumer = QueueConsumer(queue, engine, tenants)

        assert await consumer.handle_message(_message(VALID_BODY)) is False

        engine.process.assert_not_awaited()
        queue.delete.assert_not_awaited()

    async def test_end_to_end_with_real_engine(self, engine, fake_storage, memory_repository, sample_pdf_bytes):
        fake_storage.objects[("documents", f"accounting/{TENANT}/{DOC}.pdf")] = sample_pdf_bytes
        queue = _queue()
        consumer = QueueConsumer(queue, engine, memory_repository)

        body = {**VALID_BODY, "storageKey": f"accounting/{TENANT}/{DOC}.pdf"}
        assert await consumer.handle_message(_message(body)) is True

        assert memory_repository.documents[uuid.UUID(DOC)]["processing_status"] == "complete"
        queue.delete.assert_awaited_once()


# ─────────────────────────────────────────────────────────────────────────────
# Lifecycle + metrics
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestLifecycle:

    async def test_standalone_without_queue(self):
        consumer = QueueConsumer(None, MagicMock(), _tenants())

        await consumer.start()

        assert consumer.is_running is True
        assert consumer.state.workers == []
        metrics = await consumer.metrics()
        assert metrics.queue is None
        assert metrics.queue_error == "no_queue_configured"
        await consumer.stop()
        assert consumer.is_running is False

    async def test_start_spawns_workers_and_stop_cancels(self):
        queue = _queue()

        async def idle_receive():
            await asyncio.sleep(0.01)
            return None

        queue.receive = AsyncMock(side_effect=idle_receive)
        consumer = QueueConsumer(queue, MagicMock(), _tenants(), concurrency=3, drain_timeout=1)

        await consumer.start()
        await asyncio.sleep(0.05)
        metrics = await consumer.metrics()

        assert metrics.total_workers == 3
        assert metrics.active_workers == 3
        assert metrics.queue == QueueDepth(available=3, in_flight=1, delayed=0)

        await consumer.stop()
        assert consumer.is_running is False
        assert consumer.state.workers == []

    async def test_stop_waits_for_in_flight_job(self):
        release = asyncio.Event()
        processed = []

        async def slow_process(job):
            await release.wait()
            processed.append(job.job_id)

        queue = _queue()
        messages = [_message(VALID_BODY)]

        async def receive():
            if messages:
                return messages.pop()
            await asyncio.sleep(0.01)
            return None

        queue.receive = AsyncMock(side_effect=receive)
        engine = MagicMock(process=AsyncMock(side_effect=slow_process))
        consumer = QueueConsumer(
            queue, engine, _tenants(TENANT), concurrency=1, drain_timeout=5, drain_poll_interval=0.01,
        )

        await consumer.start()
        while not consumer.state.in_flight:
            await asyncio.sleep(0.01)

        stopping = asyncio.create_task(consumer.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()

        release.set()
        await stopping

        assert processed == ["m-1"]
        queue.delete.assert_awaited_once_with("rh-m-1")

    async def test_message_received_after_stop_is_released(self):
        started = []
        finish = asyncio.Event()
        gate = asyncio.Event()

        async def process(job):
            started.append(job.job_id)
            await finish.wait()

        queue = _queue()
        first = [_message(VALID_BODY, message_id="busy")]
        late = [_message(VALID_BODY, message_id="late")]

        async def receive():
            if first:
                return first.pop()
            await gate.wait()
            return late.pop() if late else None

        queue.receive = AsyncMock(side_effect=receive)
        engine = MagicMock(process=AsyncMock(side_effect=process))
        consumer = QueueConsumer(
            queue, engine, _tenants(TENANT), concurrency=2, drain_timeout=5, drain_poll_interval=0.01,
        )

        await consumer.start()
        while not consumer.state.in_flight:
            await asyncio.sleep(0.01)

        stopping = asyncio.create_task(consumer.stop())
        await asyncio.sleep(0.02)
        gate.set()
        await asyncio.sleep(0.02)
        finish.set()
        await asyncio.wait_for(stopping, timeout=2)

        assert started == ["busy"]
        queue.release.assert_awaited_once_with("rh-late")
        queue.delete.assert_awaited_once_with("rh-busy")

    async def test_drain_ceiling(self):
        async def never_finishes(job):
            await asyncio.Event().wait()

        queue = _queue()
        messages = [_message(VALID_BODY)]

        async def receive():
            if messages:
                return messages.pop()
            await asyncio.sleep(0.01)
            return None

        queue.receive = AsyncMock(side_effect=receive)
        engine = MagicMock(process=AsyncMock(side_effect=never_finishes))
        consumer = QueueConsumer(
            queue, engine, _tenants(TENANT), concurrency=1, drain_timeout=0.05, drain_poll_interval=0.01,
        )

        await consumer.start()
        while not consumer.state.in_flight:
            await asyncio.sleep(0.01)

        await asyncio.wait_for(consumer.stop(), timeout=2)

        assert consumer.is_running is False
        queue.delete.assert_not_awaited()

    async def test_receive_error_backoff_interrupted_by_stop(self):
        queue = _queue()
        queue.receive = AsyncMock(side_effect=ConnectionError("sqs unreachable"))
        consumer = QueueConsumer(queue, MagicMock(), _tenants(), concurrency=1, poll_error_backoff=60)

        await consumer.start()
        await asyncio.sleep(0.02)
        await asyncio.wait_for(consumer.stop(), timeout=2)

        assert queue.receive.await_count == 1

    async def test_queue_metrics_failure(self):
        queue = _queue()
        queue.queue_depth = AsyncMock(side_effect=RuntimeError("throttled"))
        consumer = QueueConsumer(queue, MagicMock(), _tenants())

        metrics = await consumer.metrics()

        assert metrics.queue is None
        assert metrics.queue_error == QUEUE_METRICS_ERROR
