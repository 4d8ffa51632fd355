"""
Core Data Types

Plain dataclasses passed between the connection, the AI worker and the
store. They carry no behaviour beyond (de)serialization so they can be
copied safely across task boundaries.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


# Reserved class id for knowledge that applies to every class.
GLOBAL_CLASS_ID = "global"

# 2000-01-01T00:00:00Z. Offsets below this are stream-relative, not wall clock.
MIN_PLAUSIBLE_MS = 946_684_800_000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Segment:
    """A finalized unit of transcribed speech, or a primer chunk in the buffer."""

    text: str
    id: str = field(default_factory=new_id)
    session_id: Optional[str] = None
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None
    timestamp: int = field(default_factory=now_ms)
    confidence: Optional[float] = None
    embedding: Optional[List[float]] = None

    # Primer chunks only: "class" or "global", plus the file they came from
    context_scope: Optional[str] = None
    file_name: Optional[str] = None

    @property
    def is_context(self) -> bool:
        return self.context_scope is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Segment":
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ContextSource:
    """An uploaded document in a class (or global) knowledge base."""

    id: str
    class_id: str
    file_name: str
    content_hash: str
    uploaded_at: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContextSegment:
    """One ordered chunk of a context source."""

    id: str
    source_id: str
    class_id: str
    order_index: int
    text: str
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def scope(self) -> str:
        return "global" if self.class_id == GLOBAL_CLASS_ID else "class"

    @property
    def file_name(self) -> Optional[str]:
        return self.metadata.get("file_name")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_primer_segment(self) -> Segment:
        """Buffer representation used when the chunk is loaded as primer."""
        return Segment(
            id=self.id,
            text=self.text,
            embedding=list(self.embedding) if self.embedding else None,
            context_scope=self.scope,
            file_name=self.file_name,
        )


@dataclass
class TranscriptSession:
    """A contiguous recording period."""

    id: str
    start_time: int
    class_id: Optional[str] = None
    end_time: Optional[int] = None
    duration: Optional[int] = None
    segment_count: int = 0
    word_count: int = 0

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


__all__ = [
    "GLOBAL_CLASS_ID",
    "MIN_PLAUSIBLE_MS",
    "now_ms",
    "new_id",
    "Segment",
    "ContextSource",
    "ContextSegment",
    "TranscriptSession",
]
