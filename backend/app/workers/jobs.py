"""
Queue message → ProcessingJob

Field lookup order (first non-empty wins):
  1. message attributes       documentId / vertical / tenantId / storageKey
  2. message body             direct JSON, SNS-wrapped ({"Message": "<json>"})
                              or an S3 event notification ({"Records": [...]})
  3. the storage key path     <vertical-folder>/<tenant_id>/.../<document_id>.<ext>

Errors:
  InvalidJobError        documentId or vertical missing / malformed
  TenantValidationError  tenant cannot be determined or is not UUID-like
Both mean "acknowledge and drop": redelivery cannot fix the message.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import unquote_plus
from uuid import UUID

from app.core.exceptions import InvalidJobError, TenantValidationError
from app.schemas.documents import ProcessingJob, Vertical
from app.storage.s3 import is_uuid_like, parse_storage_key
from app.workers.sqs import QueueMessage

logger = logging.getLogger(__name__)

_DOCUMENT_ID_KEYS = ("documentId", "document_id")
_VERTICAL_KEYS    = ("vertical",)
_TENANT_KEYS      = ("tenantId", "tenant_id", "organizationId", "organization_id")
_STORAGE_KEYS     = ("storageKey", "storage_key", "s3Key", "key")
_SIZE_KEYS        = ("sizeBytes", "size_bytes", "fileSize", "size")
_FILENAME_KEYS    = ("originalFilename", "original_filename", "fileName", "filename")
_MIME_KEYS        = ("mimeType", "mime_type", "contentType")


def _first(sources: tuple[dict[str, Any], ...], keys: tuple[str, ...]) -> Any:
    for source in sources:
        for key in keys:
            value = source.get(key)
            if value not in (None, ""):
                return value
    return None


def decode_body(body: str | None) -> dict[str, Any]:
    """JSON body, unwrapping SNS envelopes and S3 event notifications."""
    if not body:
        return {}
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        logger.warning("Queue message body is not JSON (len=%d)", len(body))
        return {}
    if not isinstance(payload, dict):
        return {}

    # SNS → SQS fan-out wraps the original message
    inner = payload.get("Message")
    if isinstance(inner, str):
        try:
            unwrapped = json.loads(inner)
        except (json.JSONDecodeError, ValueError):
            unwrapped = None
        if isinstance(unwrapped, dict):
            payload = unwrapped

    records = payload.get("Records")
    if isinstance(records, list) and records and isinstance(records[0], dict):
        s3 = records[0].get("s3") or {}
        obj = s3.get("object") or {}
        if obj.get("key"):
            return {"storageKey": unquote_plus(obj["key"]), "sizeBytes": obj.get("size")}
    return payload


def _to_int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def build_job(
    sources:          tuple[dict[str, Any], ...],
    job_id:           str,
    receipt_token:    str | None = None,
    delivery_attempt: int = 1,
) -> ProcessingJob:
    """Build a job from field sources in priority order."""
    storage_key = _first(sources, _STORAGE_KEYS)
    from_key = parse_storage_key(storage_key)

    document_id = _first(sources, _DOCUMENT_ID_KEYS) or (from_key.document_id if from_key else None)
    vertical    = _first(sources, _VERTICAL_KEYS) or (from_key.vertical if from_key else None)
    tenant_id   = _first(sources, _TENANT_KEYS) or (from_key.tenant_id if from_key else None)

    if not document_id or not vertical:
        raise InvalidJobError("Invalid job data: missing documentId or vertical")
    try:
        vertical = Vertical.parse(vertical)
    except ValueError as exc:
        raise InvalidJobError(str(exc)) from exc
    if not is_uuid_like(str(document_id)):
        raise InvalidJobError(f"Invalid documentId: {document_id!r}")
    if not tenant_id or not is_uuid_like(str(tenant_id)):
        raise TenantValidationError(f"Cannot determine tenant for document {document_id}")

    return ProcessingJob(
        job_id=job_id,
        tenant_id=UUID(str(tenant_id)),
        document_id=UUID(str(document_id)),
        vertical=vertical,
        storage_key=storage_key,
        size_bytes=_to_int(_first(sources, _SIZE_KEYS)),
        original_filename=_first(sources, _FILENAME_KEYS),
        mime_type=_first(sources, _MIME_KEYS),
        receipt_token=receipt_token,
        delivery_attempt=delivery_attempt,
    )


def parse_job(message: QueueMessage) -> ProcessingJob:
    """Decode a queue message; attributes take precedence over the body."""
    return build_job(
        (message.attributes, decode_body(message.body)),
        message.message_id,
        message.receipt_handle,
        message.receive_count,
    )
