"""
Knowledge Base Ingestion

Turns an uploaded document into a deduplicated context source with
ordered, optionally embedded chunks.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from classpartner_core.knowledge.chunking import ChunkingConfig, RecursiveChunker
from classpartner_core.storage.store import TranscriptStore
from classpartner_core.types import ContextSegment, ContextSource, new_id

logger = logging.getLogger(__name__)


EmbedBatch = Callable[[List[str]], Awaitable[Optional[List[List[float]]]]]


@dataclass
class IngestionResult:
    """Outcome of one ingestion request."""

    source: ContextSource
    duplicate: bool
    chunk_count: int = 0
    embedded_count: int = 0


def content_hash(text: str) -> str:
    """SHA-256 of the document text, used as the dedup key."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class ContextIngestionService:
    """
    Ingests documents into a class (or the global) knowledge base.

    Args:
        store: Transcript store owning the knowledge-base tables
        embed_batch: Coroutine embedding a list of texts in one call; it
            returns None when embeddings are unavailable
        chunker: Text splitter, defaults to a RecursiveChunker
    """

    def __init__(
        self,
        store: TranscriptStore,
        embed_batch: Optional[EmbedBatch] = None,
        chunker: Optional[RecursiveChunker] = None,
    ):
        self.store = store
        self.embed_batch = embed_batch
        self.chunker = chunker or RecursiveChunker(ChunkingConfig())

    async def ingest(
        self,
        class_id: str,
        file_name: str,
        text: str,
        metadata: Optional[dict] = None,
    ) -> IngestionResult:
        """
        Ingest one document.

        A document whose content hash already exists for the class is
        reported as a duplicate and nothing is written. The source and its
        chunks are stored together or not at all.
        """
        if not text or not text.strip():
            raise ValueError(f"{file_name} contains no text")

        digest = content_hash(text)
        existing = await self.store.get_source_by_hash(class_id, digest)
        if existing is not None:
            return self._duplicate(existing, file_name)

        chunks = self.chunker.split(text)
        embeddings = await self._embed(chunks)

        source_id = new_id()
        segments = [
            ContextSegment(
                id=new_id(),
                source_id=source_id,
                class_id=class_id,
                order_index=index,
                text=chunk,
                embedding=embeddings[index] if embeddings else None,
                metadata={"file_name": file_name, "chunk_index": index},
            )
            for index, chunk in enumerate(chunks)
        ]
        source, created = await self.store.create_source(
            class_id=class_id,
            file_name=file_name,
            content_hash=digest,
            metadata=metadata,
            segments=segments,
            source_id=source_id,
        )
        if not created:
            return self._duplicate(source, file_name)

        embedded = len(segments) if embeddings else 0
        logger.info(
            f"Ingested {file_name}: {len(segments)} chunks, {embedded} embedded",
            extra={"class_id": class_id, "source_id": source.id},
        )
        return IngestionResult(
            source=source,
            duplicate=False,
            chunk_count=len(segments),
            embedded_count=embedded,
        )

    @staticmethod
    def _duplicate(source: ContextSource, file_name: str) -> IngestionResult:
        logger.info(
            f"Skipping duplicate upload {file_name}",
            extra={"class_id": source.class_id, "source_id": source.id},
        )
        return IngestionResult(source=source, duplicate=True)

    async def _embed(self, chunks: List[str]) -> Optional[List[List[float]]]:
        if not chunks or self.embed_batch is None:
            return None
        try:
            return await self.embed_batch(chunks)
        except Exception as e:
            logger.warning(f"Context embedding failed, storing chunks without vectors: {e}")
            return None


__all__ = ["ContextIngestionService", "IngestionResult", "content_hash"]
