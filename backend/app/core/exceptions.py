"""
Exception taxonomy for the ingestion pipeline.

  InvalidJobError / TenantValidationError
      Raised while decoding a queue message. The consumer acknowledges and
      drops the job; no document record is touched.
  DocumentNotFoundError / StorageDownloadError
      Transient or data errors during a processing pass. The document is
      marked failed and the message stays on the queue for redelivery.
  NoTextExtractedError
      Full text is mandatory — raised when every extraction path came back empty.
  AIServiceError / AITimeoutError
      Hosted model failures after the retry budget is exhausted.
"""

from __future__ import annotations

import asyncio


class DocumentProcessingError(Exception):
    """Base class for all pipeline errors."""


class InvalidJobError(DocumentProcessingError):
    """Queue message cannot be decoded into a processing job."""


class TenantValidationError(DocumentProcessingError):
    """Tenant reference is missing, malformed, or unknown."""


class DocumentNotFoundError(DocumentProcessingError):
    pass


class StorageDownloadError(DocumentProcessingError):
    pass


class NoTextExtractedError(DocumentProcessingError):
    def __init__(self, message: str = "No text extracted from document") -> None:
        super().__init__(message)


class AIServiceError(DocumentProcessingError):
    """Hosted AI call failed. status_code is None for network-level failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AITimeoutError(AIServiceError):
    pass


# ---------------------------------------------------------------------------
# Retry classification
# ---------------------------------------------------------------------------

_RETRYABLE_EXCEPTION_TYPES = (
    # openai
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    # httpx / generic
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
)


def status_code_of(exc: BaseException) -> int | None:
    code = getattr(exc, "status_code", None)
    if code is None:
        response = getattr(exc, "response", None)
        code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def is_retryable(exc: BaseException) -> bool:
    """
    True for timeouts, 5xx responses and connection failures.
    4xx responses (bad request, auth, rate limit) are never retried.
    """
    if isinstance(exc, (AITimeoutError, asyncio.TimeoutError)):
        return True
    code = status_code_of(exc)
    if code is not None:
        return code >= 500
    name = type(exc).__name__
    return any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES)
