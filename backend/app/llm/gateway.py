"""
Extraction Gateway — single entry point for hosted AI calls

  ┌─────────────────────────────────────────────────────┐
  │  ExtractionGateway.extract_text / _structured /     │
  │                    _combined / embed                │
  │       │                                             │
  │       ▼                                             │
  │  resilient(timeout, retry)   ← per-call decorators  │
  │       │                                             │
  │       ▼                                             │
  │  AsyncOpenAI chat.completions / embeddings          │
  └─────────────────────────────────────────────────────┘

Inputs are AIInput values built by the strategy router:

  pdf / other   → file part   (base64 data URL)
  image         → image part  (base64 data URL)
  docx / text   → text part   (converted locally, never uploaded as bytes)
  spreadsheet   → no part     (its text travels in the prompt as context)

The gateway returns raw model text. Parsing is the Response Parser's job.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from openai import AsyncOpenAI

from app.core.config import settings
from app.llm import prompts
from app.llm.resilience import resilient
from app.processing.file_types import FileKind
from app.schemas.documents import Vertical

logger = logging.getLogger(__name__)

PING_TIMEOUT_SECONDS = 10.0


# ---------------------------------------------------------------------------
# Call input
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AIInput:
    """
    What is attached to a prompt. Exactly one of data / text is meaningful:
    binary kinds carry bytes, locally converted kinds carry text.
    """
    kind:      FileKind
    mime_type: str
    data:      bytes = b""
    text:      str | None = None
    filename:  str = "document"

    @property
    def size(self) -> int:
        return len(self.text.encode("utf-8")) if self.text is not None else len(self.data)


def content_parts(source: AIInput | None) -> list[dict]:
    """OpenAI chat content parts for one input."""
    if source is None or source.kind is FileKind.SPREADSHEET:
        return []
    if source.text is not None:
        return [{"type": "text", "text": f"Document content:\n{source.text}"}]

    encoded = base64.b64encode(source.data).decode("ascii")
    data_url = f"data:{source.mime_type};base64,{encoded}"
    if source.kind is FileKind.IMAGE:
        return [{"type": "image_url", "image_url": {"url": data_url}}]
    return [{"type": "file", "file": {"filename": source.filename, "file_data": data_url}}]


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class ExtractionGateway:
    """
    Instantiate once per process; safe for concurrent use by all workers.
    The OpenAI client is created lazily so the gateway can be built before
    credentials are validated (health checks report the failure instead).
    """

    def __init__(
        self,
        client:          AsyncOpenAI | None = None,
        model:           str | None = None,
        embedding_model: str | None = None,
        dimensions:      int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client          = client
        self._model           = model or settings.extraction_model
        self._embedding_model = embedding_model or settings.embedding_model
        self._dimensions      = dimensions or settings.embedding_dimensions

        retry = {
            "max_attempts": settings.ai_max_attempts,
            "base_delay":   settings.ai_retry_base_delay,
            "max_delay":    settings.ai_retry_max_delay,
            "sleep":        sleep,
        }
        self._text_call     = resilient(settings.ai_text_timeout_seconds, label="ai_text", **retry)(self._generate)
        self._combined_call = resilient(settings.ai_combined_timeout_seconds, label="ai_combined", **retry)(self._generate)
        self._embed_call    = resilient(settings.ai_embedding_timeout_seconds, label="ai_embedding", **retry)(self._embed_once)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            # SDK retries are disabled; resilient() owns the retry policy
            self._client = AsyncOpenAI(api_key=settings.openai_api_key, max_retries=0)
        return self._client

    # ------------------------------------------------------------------
    # Raw calls (wrapped by resilient() in __init__)
    # ------------------------------------------------------------------

    async def _generate(self, prompt: str, source: AIInput | None) -> str:
        content = [{"type": "text", "text": prompt}, *content_parts(source)]
        response = await self._get_client().chat.completions.create(
            model=self._model,
            messages=[{"role": "user", "content": content}],
            temperature=0,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def _embed_once(self, text: str) -> list[float]:
        kwargs: dict = {"model": self._embedding_model, "input": [text]}
        # dimensions param only works for text-embedding-3-* models
        if self._dimensions != 1536:
            kwargs["dimensions"] = self._dimensions
        response = await self._get_client().embeddings.create(**kwargs)
        return list(response.data[0].embedding)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def extract_text(
        self,
        source:  AIInput | None,
        context: str | None = None,
        part:    tuple[int, int] | None = None,
    ) -> str:
        text = await self._text_call(prompts.full_text_prompt(context, part), source)
        logger.debug("Full text extracted | part=%s chars=%d", part, len(text))
        return text

    async def extract_structured(
        self,
        source:   AIInput | None,
        vertical: Vertical,
        context:  str | None = None,
    ) -> str:
        return await self._text_call(prompts.structured_prompt(vertical, context), source)

    async def extract_combined(
        self,
        source:   AIInput | None,
        vertical: Vertical,
        context:  str | None = None,
    ) -> str:
        return await self._combined_call(prompts.combined_prompt(vertical, context), source)

    async def embed(self, text: str) -> list[float]:
        return await self._embed_call(text)

    async def ping(self) -> bool:
        """Reachability check for /health; never raises."""
        try:
            await asyncio.wait_for(
                self._get_client().models.retrieve(self._model),
                timeout=PING_TIMEOUT_SECONDS,
            )
            return True
        except Exception as exc:
            logger.error("AI service health check failed: %s: %s", type(exc).__name__, exc)
            return False
