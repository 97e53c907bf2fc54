"""
Unit Tests — DocumentProcessingEngine
══════════════════════════════════════
Runs the real router, parser, normaliser and embedding generator against
FakeGateway / FakeStorage / MemoryRepository from conftest.py.

Coverage targets:
  ✅ Indonesian amount "1.234.567,00" persisted as 1234567.0, status complete
  ✅ progress milestones 10 → 25 → 50 → 75 → 90 → 100
  ✅ 50% written while the structured call is still pending
  ✅ redelivery converges (no duplicate line items / chunks)
  ✅ download failure → failed + error message, exception propagates
  ✅ no text after every fallback → failed
  ✅ image upload → WebP preview stored next to the original
"""

from __future__ import annotations

import io

import pytest
from PIL import Image

from app.core.exceptions import DocumentNotFoundError, NoTextExtractedError, StorageDownloadError
from app.processing.embeddings import EmbeddingGenerator
from app.processing.strategy import ExtractionStrategyRouter
from app.schemas.documents import ProcessingJob, Vertical
from app.services.processor import DocumentProcessingEngine
from tests.conftest import FakeGateway

INDONESIAN_INVOICE = (
    '{"vendor": "PT Sumber Rejeki", "document_type": "Faktur", "amount": "1.234.567,00",'
    ' "currency": "Rp", "line_items": ['
    '{"description": "Kertas A4", "quantity": "2", "unit_price": "617.283,50", "line_total": "1.234.567,00"}'
    ']}'
)


def _engine(repository, storage, gateway) -> DocumentProcessingEngine:
    return DocumentProcessingEngine(
        repository=repository,
        storage=storage,
        router=ExtractionStrategyRouter(gateway),
        embeddings=EmbeddingGenerator(gateway, batch_delay=0),
    )


@pytest.mark.unit
class TestHappyPath:

    async def test_indonesian_amount_end_to_end(
        self, memory_repository, fake_storage, accounting_job, storage_key, sample_pdf_bytes,
    ):
        fake_storage.objects[("documents", storage_key)] = sample_pdf_bytes
        gateway = FakeGateway(text="FAKTUR PT Sumber Rejeki Total Rp 1.234.567,00", structured=INDONESIAN_INVOICE)

        report = await _engine(memory_repository, fake_storage, gateway).process(accounting_job)

        row = memory_repository.documents[accounting_job.document_id]
        assert row["processing_status"] == "complete"
        assert row["progress_percent"] == 100
        assert row["amount"] == 1234567.0
        assert row["record"].currency == "IDR"
        assert row["record"].document_type == "invoice"
        assert row["needs_review"] is False
        assert memory_repository.line_items[accounting_job.document_id][0].unit_price == 617283.5
        assert report.strategy == "small"
        assert report.ai_calls == 1
        assert report.chunk_count == 1

    async def test_progress_milestones(self, engine, memory_repository, fake_storage, accounting_job,
                                       storage_key, sample_pdf_bytes):
        fake_storage.objects[("documents", storage_key)] = sample_pdf_bytes

        await engine.process(accounting_job)

        assert memory_repository.status_history == [
            ("processing", 10),
            ("processing", 25),
            ("processing", 50),
            ("processing", 75),
            ("processing", 90),
        ]
        assert memory_repository.documents[accounting_job.document_id]["progress_percent"] == 100

    async def test_text_milestone_precedes_structured_call(self, memory_repository, fake_storage,
                                                          tenant_id, document_id):
        key = f"accounting/{tenant_id}/{document_id}.bin"
        fake_storage.objects[("documents", key)] = b"\x00" * (3 * 1024 * 1024)
        progress_at_structured = []

        class _Gateway(FakeGateway):
            async def extract_structured(self, source, vertical, context=None) -> str:
                progress_at_structured.append(memory_repository.status_history[-1])
                return await super().extract_structured(source, vertical, context=context)

        job = ProcessingJob(
            job_id="m", tenant_id=tenant_id, document_id=document_id,
            vertical=Vertical.ACCOUNTING, storage_key=key,
        )
        report = await _engine(memory_repository, fake_storage, _Gateway()).process(job)

        assert report.strategy == "comprehensive"
        assert progress_at_structured == [("processing", 50)]
        assert [p for _, p in memory_repository.status_history] == [10, 25, 50, 75, 90]

    async def test_redelivery_does_not_duplicate(self, memory_repository, fake_storage, accounting_job,
                                                 storage_key, sample_pdf_bytes):
        fake_storage.objects[("documents", storage_key)] = sample_pdf_bytes
        words = " ".join(f"word{i}" for i in range(1500))
        gateway = FakeGateway(text=words, structured=INDONESIAN_INVOICE)
        engine = _engine(memory_repository, fake_storage, gateway)

        first = await engine.process(accounting_job)
        second = await engine.process(accounting_job.model_copy(update={"delivery_attempt": 2}))

        doc_id = accounting_job.document_id
        assert first.chunk_count == second.chunk_count == 3
        assert len(memory_repository.chunks[doc_id]) == 3
        assert len(memory_repository.line_items[doc_id]) == 1
        assert [c.chunk_index for c in memory_repository.chunks[doc_id]] == [0, 1, 2]
        assert len(memory_repository.documents) == 1


@pytest.mark.unit
class TestFailures:

    async def test_download_failure_marks_failed(self, engine, memory_repository, accounting_job):
        with pytest.raises(StorageDownloadError):
            await engine.process(accounting_job)

        row = memory_repository.documents[accounting_job.document_id]
        assert row["processing_status"] == "failed"
        assert "not found" in row["error_message"]
        assert row["processing_time_ms"] >= 0

    async def test_no_text_marks_failed(self, memory_repository, fake_storage, accounting_job,
                                        storage_key, sample_pdf_bytes):
        fake_storage.objects[("documents", storage_key)] = sample_pdf_bytes
        engine = _engine(memory_repository, fake_storage, FakeGateway(text="   "))

        with pytest.raises(NoTextExtractedError):
            await engine.process(accounting_job)

        assert memory_repository.documents[accounting_job.document_id]["processing_status"] == "failed"

    async def test_missing_storage_key(self, engine, memory_repository, tenant_id, document_id):
        job = ProcessingJob(job_id="m", tenant_id=tenant_id, document_id=document_id, vertical=Vertical.LEGAL)

        with pytest.raises(DocumentNotFoundError):
            await engine.process(job)

        assert memory_repository.documents[document_id]["processing_status"] == "failed"

    async def test_failed_then_successful_redelivery(self, engine, memory_repository, fake_storage,
                                                     accounting_job, storage_key, sample_pdf_bytes):
        with pytest.raises(StorageDownloadError):
            await engine.process(accounting_job)

        fake_storage.objects[("documents", storage_key)] = sample_pdf_bytes
        await engine.process(accounting_job)

        row = memory_repository.documents[accounting_job.document_id]
        assert row["processing_status"] == "complete"
        assert row["error_message"] is None


@pytest.mark.unit
class TestImagePreview:

    async def test_preview_uploaded(self, engine, memory_repository, fake_storage, tenant_id, document_id):
        out = io.BytesIO()
        Image.new("RGB", (64, 32), color=(0, 120, 0)).save(out, format="PNG")
        key = f"accounting/{tenant_id}/{document_id}.png"
        fake_storage.objects[("documents", key)] = out.getvalue()
        job = ProcessingJob(
            job_id="m", tenant_id=tenant_id, document_id=document_id,
            vertical=Vertical.ACCOUNTING, storage_key=key,
        )

        report = await engine.process(job)

        expected = f"accounting/{tenant_id}/previews/{document_id}_preview.webp"
        assert report.preview_path == expected
        assert fake_storage.uploads == [("documents", expected, "image/webp")]
        assert memory_repository.documents[document_id]["preview_path"] == expected

    async def test_preview_disabled(self, memory_repository, fake_storage, fake_gateway, tenant_id, document_id):
        out = io.BytesIO()
        Image.new("RGB", (8, 8)).save(out, format="PNG")
        key = f"accounting/{tenant_id}/{document_id}.png"
        fake_storage.objects[("documents", key)] = out.getvalue()
        engine = DocumentProcessingEngine(
            repository=memory_repository,
            storage=fake_storage,
            router=ExtractionStrategyRouter(fake_gateway),
            embeddings=EmbeddingGenerator(fake_gateway, batch_delay=0),
            enable_previews=False,
        )
        job = ProcessingJob(
            job_id="m", tenant_id=tenant_id, document_id=document_id,
            vertical=Vertical.ACCOUNTING, storage_key=key,
        )

        report = await engine.process(job)

        assert report.preview_path is None
        assert fake_storage.uploads == []
