"""
Embedding Generator  —  Bounded-Concurrency Window Embeddings
══════════════════════════════════════════════════════════════

Design goals:
  • One embedding per word window (see chunking.split_windows); a short
    document is a single window and costs exactly one call
  • Bounded concurrency: at most `batch_size` calls in flight, batches run
    one after another with a short pause between them for rate limits
  • Failure isolation: a window whose call fails is logged and dropped;
    embedding problems never fail the document
  • Contiguous indices: surviving chunks are renumbered 0..n-1 so
    chunk_index has no holes; start_offset keeps the original position

Retry and timeout live on the embedder itself (ExtractionGateway.embed);
this module only sees the final outcome of each call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

from app.core.config import settings
from app.processing.chunking import TextWindow, normalize_text, split_windows

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EmbeddedChunk:
    chunk_index:  int
    start_offset: int
    content:      str
    embedding:    list[float]


@dataclass
class EmbeddingResult:
    """
    chunks         : embedded windows, chunk_index contiguous from 0
    total_windows  : windows the text was split into
    failed_windows : original indices of windows that were dropped
    elapsed_ms     : wall time of the whole run
    """
    chunks:         list[EmbeddedChunk]
    total_windows:  int
    elapsed_ms:     float
    failed_windows: list[int] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.total_windows == 0:
            return 1.0
        return (self.total_windows - len(self.failed_windows)) / self.total_windows


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class EmbeddingGenerator:
    """
    Usage:
        generator = EmbeddingGenerator(gateway)
        result    = await generator.generate(full_text)
    """

    def __init__(
        self,
        embedder:    Embedder,
        window_size: int | None   = None,
        overlap:     int | None   = None,
        batch_size:  int | None   = None,
        batch_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._embedder    = embedder
        self._window_size = window_size or settings.text_chunk_size
        self._overlap     = settings.text_chunk_overlap if overlap is None else overlap
        self._batch_size  = max(1, batch_size or settings.max_embedding_batch_size)
        self._batch_delay = settings.embedding_batch_delay_seconds if batch_delay is None else batch_delay
        self._sleep       = sleep

    async def generate(self, full_text: str) -> EmbeddingResult:
        t0      = time.monotonic()
        text    = normalize_text(full_text)
        windows = split_windows(text, self._window_size, self._overlap) if text else []

        if not windows:
            return EmbeddingResult(chunks=[], total_windows=0, elapsed_ms=0.0)

        batches = [
            windows[i : i + self._batch_size]
            for i in range(0, len(windows), self._batch_size)
        ]
        logger.info(
            "Embedding | windows=%d batches=%d batch_size=%d",
            len(windows), len(batches), self._batch_size,
        )

        embedded: list[tuple[TextWindow, list[float]]] = []
        failed:   list[int] = []

        for batch_idx, batch in enumerate(batches):
            results = await asyncio.gather(
                *(self._embedder.embed(window.text) for window in batch),
                return_exceptions=True,
            )
            for window, result in zip(batch, results):
                if isinstance(result, BaseException) or not result:
                    logger.warning(
                        "Embedding dropped | window=%d batch=%d error=%s",
                        window.index, batch_idx,
                        result if isinstance(result, BaseException) else "empty vector",
                    )
                    failed.append(window.index)
                    continue
                embedded.append((window, list(result)))

            if batch_idx < len(batches) - 1 and self._batch_delay > 0:
                await self._sleep(self._batch_delay)

        chunks = [
            EmbeddedChunk(
                chunk_index=position,
                start_offset=window.start_offset,
                content=window.text,
                embedding=vector,
            )
            for position, (window, vector) in enumerate(embedded)
        ]

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Embedding done | chunks=%d failed=%d elapsed_ms=%.0f",
            len(chunks), len(failed), elapsed_ms,
        )
        return EmbeddingResult(
            chunks=chunks,
            total_windows=len(windows),
            elapsed_ms=elapsed_ms,
            failed_windows=failed,
        )
