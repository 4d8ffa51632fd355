"""
Database Models

Tables for recording sessions, transcript segments and the per-class
knowledge base. Embeddings are stored as JSON float arrays in TEXT
columns; timestamps are epoch milliseconds.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from classpartner_core.storage.database import Base
from classpartner_core.types import (
    ContextSegment,
    ContextSource,
    Segment,
    TranscriptSession,
)

logger = logging.getLogger(__name__)


def dump_embedding(vector: Optional[List[float]]) -> Optional[str]:
    if not vector:
        return None
    return json.dumps([float(v) for v in vector])


def load_embedding(raw: Optional[str]) -> Optional[List[float]]:
    """Parse a stored embedding. Malformed rows yield None."""
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Skipping unparsable embedding")
        return None
    if not isinstance(value, list) or not value:
        return None
    return value


# =============================================================================
# Transcript Tables
# =============================================================================


class SessionRecord(Base):
    """Recording session with aggregates filled in on close."""

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    class_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    start_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_time: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    segment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    word_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def to_domain(self) -> TranscriptSession:
        return TranscriptSession(
            id=self.id,
            class_id=self.class_id,
            start_time=self.start_time,
            end_time=self.end_time,
            duration=self.duration,
            segment_count=self.segment_count or 0,
            word_count=self.word_count or 0,
        )


class SegmentRecord(Base):
    """Finalized transcript segment."""

    __tablename__ = "segments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    start_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    end_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    embedding: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_segments_session_timestamp", "session_id", "timestamp"),
    )

    @classmethod
    def from_domain(cls, segment: Segment) -> "SegmentRecord":
        return cls(
            id=segment.id,
            session_id=segment.session_id,
            text=segment.text,
            start_ms=segment.start_ms,
            end_ms=segment.end_ms,
            timestamp=segment.timestamp,
            confidence=segment.confidence,
            embedding=dump_embedding(segment.embedding),
        )

    def to_domain(self, with_embedding: bool = True) -> Segment:
        return Segment(
            id=self.id,
            session_id=self.session_id,
            text=self.text,
            start_ms=self.start_ms,
            end_ms=self.end_ms,
            timestamp=self.timestamp,
            confidence=self.confidence,
            embedding=load_embedding(self.embedding) if with_embedding else None,
        )


# =============================================================================
# Knowledge Base Tables
# =============================================================================


class ContextSourceRecord(Base):
    """Uploaded document, unique per class by content hash."""

    __tablename__ = "context_sources"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    class_id: Mapped[str] = mapped_column(String(64), nullable=False)
    file_name: Mapped[str] = mapped_column(String(512), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    uploaded_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    __table_args__ = (
        UniqueConstraint("class_id", "content_hash", name="uq_context_source_hash"),
        Index("ix_context_sources_class", "class_id"),
    )

    def to_domain(self) -> ContextSource:
        return ContextSource(
            id=self.id,
            class_id=self.class_id,
            file_name=self.file_name,
            content_hash=self.content_hash,
            uploaded_at=self.uploaded_at,
            metadata=dict(self.meta or {}),
        )


class ContextSegmentRecord(Base):
    """Ordered chunk of a context source."""

    __tablename__ = "context_segments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    source_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("context_sources.id", ondelete="CASCADE"),
        nullable=False,
    )
    class_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    __table_args__ = (
        Index("ix_context_segments_class_order", "class_id", "order_index"),
        Index("ix_context_segments_source", "source_id"),
    )

    @classmethod
    def from_domain(cls, segment: ContextSegment) -> "ContextSegmentRecord":
        return cls(
            id=segment.id,
            source_id=segment.source_id,
            class_id=segment.class_id,
            order_index=segment.order_index,
            text=segment.text,
            embedding=dump_embedding(segment.embedding),
            meta=dict(segment.metadata),
        )

    def to_domain(self) -> ContextSegment:
        return ContextSegment(
            id=self.id,
            source_id=self.source_id,
            class_id=self.class_id,
            order_index=self.order_index,
            text=self.text,
            embedding=load_embedding(self.embedding),
            metadata=dict(self.meta or {}),
        )


__all__ = [
    "SessionRecord",
    "SegmentRecord",
    "ContextSourceRecord",
    "ContextSegmentRecord",
    "dump_embedding",
    "load_embedding",
]
