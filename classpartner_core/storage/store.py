"""
Transcript Store

Durable storage of sessions, transcript segments and knowledge-base
chunks, with brute-force cosine similarity search over stored
embeddings.

Writes are serialized per table through one asyncio lock each; reads
run unlocked. Upserts are last-write-wins on the primary key.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from classpartner_core.knowledge.vectors import rank_by_similarity
from classpartner_core.storage.database import DatabaseManager
from classpartner_core.storage.models import (
    ContextSegmentRecord,
    ContextSourceRecord,
    SegmentRecord,
    SessionRecord,
    dump_embedding,
)
from classpartner_core.types import (
    ContextSegment,
    ContextSource,
    Segment,
    TranscriptSession,
    new_id,
    now_ms,
)

logger = logging.getLogger(__name__)


def format_time(ms: int) -> str:
    """Format a millisecond offset as h:mm:ss, or mm:ss under an hour."""
    total = max(0, int(ms) // 1000)
    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"


class TranscriptStore:
    """
    Storage facade over the transcript and knowledge-base tables.

    Usage:
        store = TranscriptStore(DatabaseManager("sqlite:///classpartner.db"))
        await store.initialize()
        session = await store.create_session(class_id="bio-101")
    """

    def __init__(self, db: DatabaseManager, search_window: int = 1000):
        """
        Args:
            db: Database manager owning the engine
            search_window: Most recent rows considered by similarity searches
        """
        self.db = db
        self.search_window = search_window
        self._locks: Dict[str, asyncio.Lock] = {
            "sessions": asyncio.Lock(),
            "segments": asyncio.Lock(),
            "context_sources": asyncio.Lock(),
            "context_segments": asyncio.Lock(),
        }

    async def initialize(self) -> None:
        await self.db.create_all()

    async def close(self) -> None:
        await self.db.close()

    # =========================================================================
    # Sessions
    # =========================================================================

    async def create_session(
        self,
        session_id: Optional[str] = None,
        class_id: Optional[str] = None,
        start_time: Optional[int] = None,
    ) -> TranscriptSession:
        """Create a session. An existing id is returned unchanged."""
        session_id = session_id or new_id()
        async with self._locks["sessions"]:
            async with self.db.session() as db:
                existing = await db.get(SessionRecord, session_id)
                if existing is not None:
                    return existing.to_domain()

                record = SessionRecord(
                    id=session_id,
                    class_id=class_id,
                    start_time=start_time if start_time is not None else now_ms(),
                    segment_count=0,
                    word_count=0,
                )
                db.add(record)
                await db.flush()
                logger.info(f"Created session {session_id}", extra={"class_id": class_id})
                return record.to_domain()

    async def end_session(
        self,
        session_id: str,
        end_time: Optional[int] = None,
    ) -> Optional[TranscriptSession]:
        """
        Close a session and compute its aggregates.

        Word count uses the space-count approximation (spaces + 1 per
        segment).
        """
        end_time = end_time if end_time is not None else now_ms()
        async with self._locks["sessions"]:
            async with self.db.session() as db:
                record = await db.get(SessionRecord, session_id)
                if record is None:
                    return None

                result = await db.execute(
                    select(
                        func.count(SegmentRecord.id),
                        func.coalesce(
                            func.sum(
                                func.length(SegmentRecord.text)
                                - func.length(func.replace(SegmentRecord.text, " ", ""))
                                + 1
                            ),
                            0,
                        ),
                    ).where(SegmentRecord.session_id == session_id)
                )
                segment_count, word_count = result.one()

                record.end_time = end_time
                record.duration = end_time - record.start_time
                record.segment_count = int(segment_count or 0)
                record.word_count = int(word_count or 0)
                await db.flush()

                logger.info(
                    f"Closed session {session_id}",
                    extra={
                        "segments": record.segment_count,
                        "words": record.word_count,
                    },
                )
                return record.to_domain()

    async def get_session(self, session_id: str) -> Optional[TranscriptSession]:
        async with self.db.session() as db:
            record = await db.get(SessionRecord, session_id)
            return record.to_domain() if record else None

    async def list_sessions(
        self,
        limit: int = 50,
        class_id: Optional[str] = None,
    ) -> List[TranscriptSession]:
        """Most recent sessions first."""
        query = select(SessionRecord).order_by(SessionRecord.start_time.desc()).limit(limit)
        if class_id is not None:
            query = query.where(SessionRecord.class_id == class_id)
        async with self.db.session() as db:
            result = await db.execute(query)
            return [record.to_domain() for record in result.scalars().all()]

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and all of its segments."""
        async with self._locks["sessions"], self._locks["segments"]:
            async with self.db.session() as db:
                record = await db.get(SessionRecord, session_id)
                if record is None:
                    return False
                await db.execute(
                    delete(SegmentRecord).where(SegmentRecord.session_id == session_id)
                )
                await db.delete(record)
        logger.info(f"Deleted session {session_id}")
        return True

    # =========================================================================
    # Segments
    # =========================================================================

    async def save_segment(self, segment: Segment) -> None:
        """Insert or replace a segment."""
        if not segment.session_id:
            raise ValueError("Segment has no session_id")
        async with self._locks["segments"]:
            async with self.db.session() as db:
                await db.merge(SegmentRecord.from_domain(segment))

    async def save_segments_batch(self, segments: Sequence[Segment]) -> int:
        """Insert or replace many segments in one transaction."""
        if not segments:
            return 0
        async with self._locks["segments"]:
            async with self.db.session() as db:
                for segment in segments:
                    if not segment.session_id:
                        raise ValueError(f"Segment {segment.id} has no session_id")
                    await db.merge(SegmentRecord.from_domain(segment))
        return len(segments)

    async def attach_embedding(self, segment_id: str, embedding: List[float]) -> bool:
        """Attach an embedding computed after the segment was first saved."""
        async with self._locks["segments"]:
            async with self.db.session() as db:
                record = await db.get(SegmentRecord, segment_id)
                if record is None:
                    return False
                record.embedding = dump_embedding(embedding)
                return True

    async def get_segments_by_session(
        self,
        session_id: str,
        with_embeddings: bool = False,
    ) -> List[Segment]:
        """All segments of a session in timestamp order."""
        async with self.db.session() as db:
            result = await db.execute(
                select(SegmentRecord)
                .where(SegmentRecord.session_id == session_id)
                .order_by(SegmentRecord.timestamp.asc())
            )
            return [
                record.to_domain(with_embedding=with_embeddings)
                for record in result.scalars().all()
            ]

    async def get_full_transcript(
        self,
        session_id: str,
        include_timestamps: bool = True,
    ) -> str:
        """Plain-text transcript, one segment per line."""
        session = await self.get_session(session_id)
        segments = await self.get_segments_by_session(session_id)
        if not include_timestamps:
            return "\n".join(segment.text for segment in segments)

        origin = session.start_time if session else (segments[0].timestamp if segments else 0)
        lines = []
        for segment in segments:
            at = segment.start_ms if segment.start_ms is not None else segment.timestamp
            lines.append(f"[{format_time(at - origin)}] {segment.text}")
        return "\n".join(lines)

    async def search_similar(
        self,
        session_id: str,
        query_embedding: Sequence[float],
        k: int = 6,
        exclude_ids: Iterable[str] = (),
    ) -> List[Tuple[Segment, float]]:
        """
        Cosine search over the most recent embedded segments of a session.

        Excluded ids (segments already held in memory) are dropped before
        the newest `search_window` rows are taken, so the window always
        reaches past the in-memory buffer.
        """
        query = select(SegmentRecord).where(
            SegmentRecord.session_id == session_id,
            SegmentRecord.embedding.is_not(None),
        )
        excluded = list(set(exclude_ids))
        if excluded:
            query = query.where(SegmentRecord.id.not_in(excluded))
        async with self.db.session() as db:
            result = await db.execute(
                query.order_by(SegmentRecord.timestamp.desc()).limit(self.search_window)
            )
            records = result.scalars().all()

        candidates = []
        for record in records:
            segment = record.to_domain()
            candidates.append((segment, segment.embedding))
        return rank_by_similarity(query_embedding, candidates, k)

    # =========================================================================
    # Knowledge Base
    # =========================================================================

    async def get_source_by_hash(
        self,
        class_id: str,
        content_hash: str,
    ) -> Optional[ContextSource]:
        async with self.db.session() as db:
            result = await db.execute(
                select(ContextSourceRecord).where(
                    ContextSourceRecord.class_id == class_id,
                    ContextSourceRecord.content_hash == content_hash,
                )
            )
            record = result.scalar_one_or_none()
            return record.to_domain() if record else None

    async def create_source(
        self,
        class_id: str,
        file_name: str,
        content_hash: str,
        metadata: Optional[dict] = None,
        segments: Sequence[ContextSegment] = (),
        source_id: Optional[str] = None,
    ) -> Tuple[ContextSource, bool]:
        """
        Register a context source together with its chunks.

        The source row and every chunk are written in one transaction, so
        a failed write leaves neither behind and the upload can be retried.

        Returns:
            (source, created). When (class_id, content_hash) already exists
            the existing source is returned with created=False and nothing
            is written.
        """
        async with self._locks["context_sources"], self._locks["context_segments"]:
            existing = await self.get_source_by_hash(class_id, content_hash)
            if existing is not None:
                return existing, False

            record = ContextSourceRecord(
                id=source_id or new_id(),
                class_id=class_id,
                file_name=file_name,
                content_hash=content_hash,
                uploaded_at=now_ms(),
                meta=dict(metadata or {}),
            )
            try:
                async with self.db.session() as db:
                    db.add(record)
                    await db.flush()
                    for segment in segments:
                        segment.source_id = record.id
                        db.add(ContextSegmentRecord.from_domain(segment))
            except IntegrityError:
                existing = await self.get_source_by_hash(class_id, content_hash)
                if existing is None:
                    raise
                return existing, False

        logger.info(
            f"Registered context source {file_name} with {len(segments)} chunks",
            extra={"class_id": class_id, "source_id": record.id},
        )
        return record.to_domain(), True

    async def list_sources(self, class_id: str) -> List[ContextSource]:
        async with self.db.session() as db:
            result = await db.execute(
                select(ContextSourceRecord)
                .where(ContextSourceRecord.class_id == class_id)
                .order_by(ContextSourceRecord.uploaded_at.desc())
            )
            return [record.to_domain() for record in result.scalars().all()]

    async def delete_source(self, source_id: str) -> bool:
        """Delete a source and its chunks atomically."""
        async with self._locks["context_sources"], self._locks["context_segments"]:
            async with self.db.session() as db:
                record = await db.get(ContextSourceRecord, source_id)
                if record is None:
                    return False
                await db.execute(
                    delete(ContextSegmentRecord).where(
                        ContextSegmentRecord.source_id == source_id
                    )
                )
                await db.delete(record)
        logger.info(f"Deleted context source {source_id}")
        return True

    async def save_context_segments(self, segments: Sequence[ContextSegment]) -> int:
        if not segments:
            return 0
        async with self._locks["context_segments"]:
            async with self.db.session() as db:
                for segment in segments:
                    await db.merge(ContextSegmentRecord.from_domain(segment))
        return len(segments)

    async def count_context_segments(self, class_id: str) -> int:
        async with self.db.session() as db:
            result = await db.execute(
                select(func.count(ContextSegmentRecord.id)).where(
                    ContextSegmentRecord.class_id == class_id
                )
            )
            return int(result.scalar_one())

    async def search_similar_context(
        self,
        class_id: str,
        query_embedding: Sequence[float],
        k: int = 6,
        exclude_ids: Iterable[str] = (),
    ) -> List[Tuple[ContextSegment, float]]:
        """
        Cosine search over embedded knowledge-base chunks of one class scope.

        The `search_window` rows come from the most recently uploaded
        sources first, each in document order.
        """
        query = (
            select(ContextSegmentRecord)
            .join(ContextSourceRecord, ContextSegmentRecord.source_id == ContextSourceRecord.id)
            .where(
                ContextSegmentRecord.class_id == class_id,
                ContextSegmentRecord.embedding.is_not(None),
            )
        )
        excluded = list(set(exclude_ids))
        if excluded:
            query = query.where(ContextSegmentRecord.id.not_in(excluded))
        async with self.db.session() as db:
            result = await db.execute(
                query.order_by(
                    ContextSourceRecord.uploaded_at.desc(),
                    ContextSegmentRecord.order_index.asc(),
                ).limit(self.search_window)
            )
            records = result.scalars().all()

        candidates = []
        for record in records:
            segment = record.to_domain()
            candidates.append((segment, segment.embedding))
        return rank_by_similarity(query_embedding, candidates, k)

    async def get_context_primer(self, class_id: str, limit: int = 5) -> List[ContextSegment]:
        """The first `limit` chunks of a class scope, in document order."""
        async with self.db.session() as db:
            result = await db.execute(
                select(ContextSegmentRecord)
                .where(ContextSegmentRecord.class_id == class_id)
                .order_by(ContextSegmentRecord.order_index.asc(), ContextSegmentRecord.id)
                .limit(limit)
            )
            return [record.to_domain() for record in result.scalars().all()]


__all__ = ["TranscriptStore", "format_time"]
