"""
Embedding Indexer

Computes embeddings for transcript segments, queries and knowledge-base
chunks. Failures never raise: callers get None and keep going, and
throttling from the provider pauses embedding for a cooldown period.
"""

import logging
import time
from typing import TYPE_CHECKING, Callable, List, Optional

from classpartner_core.errors import is_rate_limit_error
from classpartner_core.knowledge.embeddings import EmbeddingProvider

if TYPE_CHECKING:
    from classpartner_core.pipeline.buffer import RollingBuffer
    from classpartner_core.types import Segment

logger = logging.getLogger(__name__)


class EmbeddingIndexer:
    """Failure-tolerant front end to an embedding provider."""

    def __init__(
        self,
        provider: Optional[EmbeddingProvider],
        cooldown_s: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        on_log: Optional[Callable[[str], None]] = None,
    ):
        self.provider = provider
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._on_log = on_log
        self._disabled_until = 0.0

    @property
    def enabled(self) -> bool:
        return self.provider is not None and self._clock() >= self._disabled_until

    def _handle_failure(self, error: BaseException, what: str) -> None:
        if is_rate_limit_error(error):
            already_disabled = self._clock() < self._disabled_until
            self._disabled_until = self._clock() + self.cooldown_s
            if not already_disabled:
                minutes = round(self.cooldown_s / 60)
                message = f"Embeddings rate-limited; disabling for {minutes} min."
                logger.warning(message, extra={"error": str(error)[:200]})
                if self._on_log is not None:
                    self._on_log(message)
            return
        logger.warning(f"Embedding {what} failed: {error}")

    async def embed_text(self, text: str) -> Optional[List[float]]:
        """Embed one text, or None when disabled or on failure."""
        if not self.enabled or not text.strip():
            return None
        try:
            vectors = await self.provider.embed([text])
        except Exception as e:
            self._handle_failure(e, "of text")
            return None
        return list(vectors[0]) if vectors and vectors[0] is not None else None

    async def index_segment(
        self,
        buffer: "RollingBuffer",
        segment: "Segment",
    ) -> Optional[List[float]]:
        """
        Embed a buffered segment and attach the vector at its position.

        On failure the buffer keeps its None/0.0 placeholder.
        """
        vector = await self.embed_text(segment.text)
        if vector is not None:
            buffer.attach_vector(segment.id, vector)
        return vector

    async def embed_context_batch(self, texts: List[str]) -> Optional[List[List[float]]]:
        """
        Embed knowledge-base chunks in a single call.

        Returns None when the whole batch fails; chunks are then stored
        without embeddings.
        """
        if not texts or not self.enabled:
            return None
        try:
            vectors = await self.provider.embed(texts)
        except Exception as e:
            self._handle_failure(e, f"of {len(texts)} context chunks")
            return None
        if len(vectors) != len(texts):
            logger.warning(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} chunks"
            )
            return None
        return [list(vector) for vector in vectors]

    async def close(self) -> None:
        if self.provider is not None:
            await self.provider.close()


__all__ = ["EmbeddingIndexer"]
