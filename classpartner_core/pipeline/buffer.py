"""
Rolling Transcript Buffer

In-memory window of recent segments with index-aligned embedding and
norm arrays. Primer chunks loaded from the knowledge base live in the
same arrays but are never evicted by the size cap.
"""

from typing import Iterator, List, Optional, Tuple

from classpartner_core.knowledge.vectors import vector_norm
from classpartner_core.types import Segment


class RollingBuffer:
    """
    Segments plus parallel `vectors` and `norms` lists.

    The three lists always have equal length; a segment without an
    embedding holds a None vector and a 0.0 norm.
    """

    def __init__(self, cap: int = 2000):
        self.cap = cap
        self.segments: List[Segment] = []
        self.vectors: List[Optional[List[float]]] = []
        self.norms: List[float] = []

    def __len__(self) -> int:
        return len(self.segments)

    @property
    def is_aligned(self) -> bool:
        return len(self.segments) == len(self.vectors) == len(self.norms)

    def _push(self, segment: Segment) -> None:
        vector = list(segment.embedding) if segment.embedding else None
        self.segments.append(segment)
        self.vectors.append(vector)
        self.norms.append(vector_norm(vector))

    def append(self, segment: Segment) -> List[Segment]:
        """
        Add a lecture segment and enforce the cap.

        Returns:
            Segments evicted to stay within the cap, oldest first
        """
        self._push(segment)
        excess = self.lecture_count - self.cap
        if excess <= 0:
            return []
        return self._evict_oldest_lecture(excess)

    def add_primer(self, segments: List[Segment]) -> int:
        """Load knowledge-base primer chunks. Duplicates by id are skipped."""
        present = set(self.ids())
        added = 0
        for segment in segments:
            if segment.id in present or not segment.is_context:
                continue
            self._push(segment)
            present.add(segment.id)
            added += 1
        return added

    def _evict_oldest_lecture(self, count: int) -> List[Segment]:
        evicted: List[Segment] = []
        keep_segments: List[Segment] = []
        keep_vectors: List[Optional[List[float]]] = []
        keep_norms: List[float] = []

        for segment, vector, norm in zip(self.segments, self.vectors, self.norms):
            if len(evicted) < count and not segment.is_context:
                evicted.append(segment)
                continue
            keep_segments.append(segment)
            keep_vectors.append(vector)
            keep_norms.append(norm)

        self.segments = keep_segments
        self.vectors = keep_vectors
        self.norms = keep_norms
        return evicted

    def attach_vector(self, segment_id: str, vector: Optional[List[float]]) -> bool:
        """Set the embedding for a buffered segment. False if it was evicted."""
        for index in range(len(self.segments) - 1, -1, -1):
            if self.segments[index].id == segment_id:
                self.vectors[index] = list(vector) if vector else None
                self.norms[index] = vector_norm(vector)
                self.segments[index].embedding = self.vectors[index]
                return True
        return False

    def entries(self) -> Iterator[Tuple[Segment, Optional[List[float]], float]]:
        return zip(self.segments, self.vectors, self.norms)

    def ids(self) -> List[str]:
        return [segment.id for segment in self.segments]

    @property
    def lecture_count(self) -> int:
        return sum(1 for segment in self.segments if not segment.is_context)

    def lecture_segments(self) -> List[Segment]:
        return [segment for segment in self.segments if not segment.is_context]

    def primer_segments(self) -> List[Segment]:
        return [segment for segment in self.segments if segment.is_context]

    def primer_text(self) -> str:
        return "\n".join(segment.text for segment in self.primer_segments())

    def rolling_text(self, now_ms: int, window_ms: int, fallback_count: int = 6) -> str:
        """
        Lecture text that ended within the last `window_ms`.

        Falls back to the last `fallback_count` lecture segments when the
        window is empty.
        """
        lecture = self.lecture_segments()
        cutoff = now_ms - window_ms
        recent = [s for s in lecture if s.end_ms is not None and s.end_ms >= cutoff]
        if not recent:
            recent = lecture[-fallback_count:] if fallback_count > 0 else []
        return " ".join(segment.text for segment in recent).strip()

    def clear(self) -> None:
        self.segments = []
        self.vectors = []
        self.norms = []


__all__ = ["RollingBuffer"]
