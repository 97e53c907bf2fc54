"""
S3 Storage Service — Document Downloads & Preview Uploads

Key layout (written by the upload path, parsed here):

    <vertical-folder>/<tenant_id>/<...>/<document_id>.<ext>

    accounting/3f0c…/2024/05/8a1e….pdf      → vertical=accounting
    legal-docs/3f0c…/contracts/91bb….docx   → vertical=legal

The tenant is the segment immediately after a recognised vertical folder
and must look like a UUID; anything else yields None and the job is
dropped by the consumer.

Buckets:
    accounting → settings.s3_bucket        (default "documents")
    legal      → settings.s3_legal_bucket  (default "legal-docs")
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings
from app.core.exceptions import StorageDownloadError
from app.schemas.documents import Vertical

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Key layout
# ---------------------------------------------------------------------------

# Folder names accepted as the first segment of a storage key
VERTICAL_FOLDERS: dict[str, Vertical] = {
    "accounting": Vertical.ACCOUNTING,
    "documents":  Vertical.ACCOUNTING,
    "legal":      Vertical.LEGAL,
    "legal-docs": Vertical.LEGAL,
}

# Folder written for generated artefacts (previews) per vertical
_OUTPUT_FOLDERS: dict[Vertical, str] = {
    Vertical.ACCOUNTING: "accounting",
    Vertical.LEGAL:      "legal",
}

_UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


@dataclass(frozen=True)
class StorageKey:
    """Components recovered from an object key."""
    vertical:    Vertical
    tenant_id:   str
    document_id: str | None
    filename:    str


def is_uuid_like(value: str | None) -> bool:
    return bool(value) and bool(_UUID_RE.match(value))


def parse_storage_key(key: str | None) -> StorageKey | None:
    """
    Recover vertical / tenant / document id from a key.

    The vertical folder may appear anywhere in the path (some uploaders
    prefix keys with an environment folder); the first recognised one wins.
    """
    if not key:
        return None
    segments = [s for s in key.strip("/").split("/") if s]
    for i, segment in enumerate(segments[:-1]):
        vertical = VERTICAL_FOLDERS.get(segment.lower())
        if vertical is None:
            continue
        tenant_id = segments[i + 1]
        if not is_uuid_like(tenant_id):
            return None
        filename = segments[-1]
        stem = filename.rsplit(".", 1)[0]
        return StorageKey(
            vertical=vertical,
            tenant_id=tenant_id.lower(),
            document_id=stem.lower() if is_uuid_like(stem) else None,
            filename=filename,
        )
    return None


def bucket_for(vertical: Vertical) -> str:
    return settings.s3_legal_bucket if Vertical.parse(vertical) is Vertical.LEGAL else settings.s3_bucket


def preview_key(vertical: Vertical, tenant_id: object, document_id: object) -> str:
    folder = _OUTPUT_FOLDERS[Vertical.parse(vertical)]
    return f"{folder}/{tenant_id}/previews/{document_id}_preview.webp"


# ---------------------------------------------------------------------------
# S3 Service
# ---------------------------------------------------------------------------

class ObjectStorage:
    """
    Thin async wrapper over S3. One aioboto3 session is shared; a client
    context is opened per call.
    """

    def __init__(self, region: str | None = None, session: aioboto3.Session | None = None) -> None:
        self._region  = region or settings.aws_region
        self._session = session or aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            # Credentials come from the task role in production and from
            # AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY locally.
        )

    async def download(self, bucket: str, key: str) -> bytes:
        """Fetch an object's bytes. Missing objects and S3 errors raise StorageDownloadError."""
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=bucket, Key=key)
                data = await resp["Body"].read()
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code", "")
                if code in ("NoSuchKey", "404"):
                    raise StorageDownloadError(f"Object not found: s3://{bucket}/{key}") from exc
                raise StorageDownloadError(f"S3 get_object failed ({code}): s3://{bucket}/{key}") from exc
            except BotoCoreError as exc:
                raise StorageDownloadError(f"S3 download failed: {exc}") from exc

        logger.info("S3 download ok | bucket=%s key=%s size=%d", bucket, key, len(data))
        return data

    async def upload(self, bucket: str, key: str, body: bytes, content_type: str) -> str:
        """Store bytes under key and return the key."""
        async with self._client() as s3:
            await s3.put_object(
                Bucket=bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        logger.info("S3 upload ok | bucket=%s key=%s size=%d", bucket, key, len(body))
        return key
