"""
Integration Tests — HTTP surface
════════════════════════════════
Full FastAPI routing stack over httpx's ASGI transport. The lifespan does
not run; collaborators are placed on app.state by the fixture instead.

What is mocked vs real
──────────────────────
  ✅ Real: routing, request parsing, exception handlers, QueueConsumer
           (standalone), processing engine, router, parser, normaliser
  🔲 Fake: AI gateway, object storage, repository (conftest.py)
  🔲 Mock: database ping (check_db_health patched)

How to run
──────────
  pytest -m integration backend/tests/integration/test_api.py -v
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

import app.main as main_module
from app.workers.consumer import QueueConsumer


@pytest.fixture
def application(engine, memory_repository, monkeypatch):
    monkeypatch.setattr(main_module, "check_db_health", AsyncMock(return_value=True))
    app = main_module.create_app()
    app.state.gateway = MagicMock(ping=AsyncMock(return_value=True))
    app.state.consumer = QueueConsumer(None, engine, memory_repository)
    return app


@pytest.fixture
async def client(application):
    async with AsyncClient(transport=ASGITransport(app=application), base_url="http://test") as ac:
        yield ac


@pytest.mark.integration
class TestProcessEndpoint:

    async def test_processes_document(self, client, fake_storage, memory_repository,
                                      tenant_id, document_id, storage_key, sample_pdf_bytes):
        fake_storage.objects[("documents", storage_key)] = sample_pdf_bytes

        resp = await client.post("/api/v1/process", json={
            "documentId": str(document_id),
            "vertical":   "accounting",
            "tenantId":   str(tenant_id),
            "storageKey": storage_key,
        })

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["documentId"] == str(document_id)
        assert memory_repository.documents[document_id]["processing_status"] == "complete"

    async def test_tenant_from_storage_key(self, client, fake_storage, document_id, storage_key, sample_pdf_bytes):
        fake_storage.objects[("documents", storage_key)] = sample_pdf_bytes

        resp = await client.post("/api/v1/process", json={
            "documentId": str(document_id), "vertical": "accounting", "storageKey": storage_key,
        })

        assert resp.status_code == 200

    @pytest.mark.parametrize("payload", [
        {"vertical": "accounting"},
        {"documentId": "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"},
        {},
    ])
    async def test_missing_fields_400(self, client, payload):
        resp = await client.post("/api/v1/process", json=payload)

        assert resp.status_code == 400
        assert resp.json()["error"] == "BAD_REQUEST"
        assert "required" in resp.json()["message"]

    async def test_unknown_tenant_400(self, client, document_id):
        resp = await client.post("/api/v1/process", json={
            "documentId": str(document_id),
            "vertical":   "accounting",
            "tenantId":   "99999999-9999-9999-9999-999999999999",
        })

        assert resp.status_code == 400

    async def test_processing_failure_500(self, client, memory_repository, tenant_id, document_id, storage_key):
        resp = await client.post("/api/v1/process", json={
            "documentId": str(document_id),
            "vertical":   "accounting",
            "tenantId":   str(tenant_id),
            "storageKey": storage_key,
        })

        assert resp.status_code == 500
        assert resp.json()["message"].startswith("Processing failed")
        assert memory_repository.documents[document_id]["processing_status"] == "failed"


@pytest.mark.integration
class TestOperationsEndpoints:

    async def test_health_ok(self, client):
        resp = await client.get("/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["database"] is True
        assert body["ai_service"] is True

    async def test_health_db_down(self, client, monkeypatch):
        monkeypatch.setattr(main_module, "check_db_health", AsyncMock(return_value=False))

        resp = await client.get("/health")

        assert resp.status_code == 503
        assert resp.json()["status"] == "unhealthy"

    async def test_metrics_standalone(self, client):
        resp = await client.get("/metrics")

        assert resp.status_code == 200
        body = resp.json()
        assert body["in_flight_jobs"] == 0
        assert body["total_workers"] == 0
        assert body["queue"] is None
        assert body["queue_error"] == "no_queue_configured"

    async def test_request_id_echoed(self, client):
        resp = await client.get("/metrics", headers={"X-Request-ID": "req-123"})

        assert resp.headers["X-Request-ID"] == "req-123"
