"""
Hybrid Retrieval

Answers questions about the lecture from three sources: the in-memory
rolling buffer, the persisted history of the current session and the
class/global knowledge bases. Results are merged, ranked and optionally
handed to the language model for a short answer.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from classpartner_core.errors import ConfigurationError
from classpartner_core.knowledge.indexer import EmbeddingIndexer
from classpartner_core.knowledge.vectors import cosine_similarity, vector_norm
from classpartner_core.llm.base import PromptContext
from classpartner_core.llm.failover import FailoverLLM
from classpartner_core.pipeline.buffer import RollingBuffer
from classpartner_core.types import GLOBAL_CLASS_ID, Segment, now_ms

logger = logging.getLogger(__name__)


# Diagnostics keep only the tail of the rolling text
ROLLING_SUMMARY_CHARS = 800


class SearchBackend(Protocol):
    """Persisted-history searches, served across the worker boundary."""

    async def search_session(
        self,
        session_id: str,
        query_embedding: List[float],
        k: int,
        exclude_ids: List[str],
    ) -> List[Dict[str, Any]]:
        ...

    async def search_context(
        self,
        class_id: str,
        query_embedding: List[float],
        k: int,
        exclude_ids: List[str],
    ) -> List[Dict[str, Any]]:
        ...


@dataclass
class Hit:
    """A ranked retrieval candidate."""

    id: str
    text: str
    score: float
    source: str  # "memory", "disk", "class" or "global"
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None
    file_name: Optional[str] = None
    scope: Optional[str] = None  # set for knowledge-base text

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str, scope: Optional[str] = None) -> "Hit":
        return cls(
            id=data["id"],
            text=data.get("text", ""),
            score=float(data.get("score", 0.0)),
            source=source,
            start_ms=data.get("start_ms"),
            end_ms=data.get("end_ms"),
            file_name=data.get("file_name"),
            scope=scope,
        )


def keyword_score(query: str, text: str) -> float:
    """
    Containment score used when no query embedding is available.

    The whole query inside the text scores its full length; otherwise the
    lengths of the query words (longer than two characters) found in the
    text are summed. The total is divided by the text length.
    """
    q = query.lower().strip()
    t = text.lower()
    if not q or not t:
        return 0.0
    if q in t:
        matched = len(q)
    else:
        matched = sum(len(word) for word in set(q.split()) if len(word) > 2 and word in t)
    return matched / (len(t) + 1)


def format_offset(ms: Optional[int]) -> str:
    """`mm:ss` for an offset in milliseconds; minutes are not wrapped into hours."""
    if ms is None:
        return "--:--"
    seconds = max(0, round(ms / 1000))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def format_hit(hit: Hit, session_start_ms: Optional[int]) -> str:
    if hit.scope is not None:
        label = "[Global Context]" if hit.scope == "global" else "[Class Context]"
        origin = f" ({hit.file_name})" if hit.file_name else ""
        return f"• {label} {hit.text}{origin}"

    def relative(ms: Optional[int]) -> Optional[int]:
        if ms is None:
            return None
        return ms - session_start_ms if session_start_ms is not None else ms

    start = format_offset(relative(hit.start_ms))
    end = format_offset(relative(hit.end_ms))
    return f"• [{start}-{end}] {hit.text}"


class HybridRetriever:
    """
    Ranked snippet retrieval with optional question answering.

    Args:
        buffer: Rolling buffer of the active session
        indexer: Embeds the query; a disabled indexer means keyword scoring
        backend: Persisted-history search across the worker boundary
        window_ms: Rolling window used for the diagnostics summary text
    """

    def __init__(
        self,
        buffer: RollingBuffer,
        indexer: EmbeddingIndexer,
        backend: SearchBackend,
        window_ms: int = 60_000,
        clock: Callable[[], int] = now_ms,
    ):
        self.buffer = buffer
        self.indexer = indexer
        self.backend = backend
        self.window_ms = window_ms
        self._clock = clock

    def _memory_hits(
        self,
        query: str,
        query_vector: Optional[List[float]],
    ) -> List[Hit]:
        hits: List[Hit] = []
        query_norm = vector_norm(query_vector)
        for segment, vector, norm in self.buffer.entries():
            if query_vector is not None:
                if vector is None or not norm:
                    continue
                score = cosine_similarity(query_vector, vector, query_norm, norm)
            else:
                score = keyword_score(query, segment.text)
                if score <= 0:
                    continue
            hits.append(self._segment_hit(segment, score))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    @staticmethod
    def _segment_hit(segment: Segment, score: float) -> Hit:
        return Hit(
            id=segment.id,
            text=segment.text,
            score=score,
            source="memory",
            start_ms=segment.start_ms,
            end_ms=segment.end_ms,
            file_name=segment.file_name,
            scope=segment.context_scope,
        )

    async def _remote_hits(
        self,
        session_id: Optional[str],
        class_id: Optional[str],
        query_vector: List[float],
        k: int,
        search_full_history: bool,
    ) -> Dict[str, List[Hit]]:
        exclude = self.buffer.ids()
        labels: List[str] = []
        calls = []

        if search_full_history and session_id:
            labels.append("disk")
            calls.append(self.backend.search_session(session_id, query_vector, k, exclude))
        if class_id and class_id != GLOBAL_CLASS_ID:
            labels.append("class")
            calls.append(self.backend.search_context(class_id, query_vector, k, exclude))
        labels.append("global")
        calls.append(self.backend.search_context(GLOBAL_CLASS_ID, query_vector, k, exclude))

        results = await asyncio.gather(*calls, return_exceptions=True)

        found: Dict[str, List[Hit]] = {"disk": [], "class": [], "global": []}
        for label, result in zip(labels, results):
            if isinstance(result, BaseException):
                logger.warning(f"{label} search failed: {result}")
                continue
            scope = None if label == "disk" else label
            found[label] = [Hit.from_dict(item, label, scope) for item in result]
        return found

    def _backfill(
        self,
        query: str,
        used_embeddings: bool,
        selected: Sequence[Hit],
        k: int,
    ) -> List[Hit]:
        present = {hit.id for hit in selected}
        candidates = [s for s in self.buffer.primer_segments() if s.id not in present]
        if not used_embeddings:
            # Keyword matches first, stable otherwise
            candidates.sort(key=lambda s: keyword_score(query, s.text) <= 0)
        return [self._segment_hit(s, 0.0) for s in candidates[: max(0, k - len(selected))]]

    async def retrieve(
        self,
        query: str,
        k: int = 6,
        search_full_history: bool = True,
        session_id: Optional[str] = None,
        class_id: Optional[str] = None,
        session_start_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Ranked snippet block plus diagnostics, without calling the LLM."""
        query_vector = await self.indexer.embed_text(query)
        used_embeddings = query_vector is not None and vector_norm(query_vector) > 0
        if not used_embeddings:
            query_vector = None

        memory = self._memory_hits(query, query_vector)[:k]

        remote: Dict[str, List[Hit]] = {"disk": [], "class": [], "global": []}
        if query_vector is not None:
            remote = await self._remote_hits(
                session_id, class_id, query_vector, k, search_full_history
            )

        merged: Dict[str, Hit] = {}
        for hit in memory + remote["disk"] + remote["class"] + remote["global"]:
            current = merged.get(hit.id)
            if current is None or hit.score > current.score:
                merged[hit.id] = hit
        top = sorted(merged.values(), key=lambda h: h.score, reverse=True)[:k]

        if len(top) < k:
            top.extend(self._backfill(query, used_embeddings, top, k))

        snippets = "\n".join(format_hit(hit, session_start_ms) for hit in top)
        rolling = self.buffer.rolling_text(self._clock(), self.window_ms)

        return {
            "snippets": snippets,
            "hits": [vars(hit).copy() for hit in top],
            "diagnostics": {
                "memory_hits": len(memory),
                "disk_hits": len(remote["disk"]),
                "class_hits": len(remote["class"]),
                "global_hits": len(remote["global"]),
                "searched_full_history": bool(search_full_history),
                "used_embeddings": used_embeddings,
                "rolling_summary": rolling[-ROLLING_SUMMARY_CHARS:],
            },
        }

    async def answer(
        self,
        query: str,
        llm: Optional[FailoverLLM],
        context: Optional[PromptContext] = None,
        k: int = 6,
        search_full_history: bool = True,
        mode: str = "qa",
        session_id: Optional[str] = None,
        class_id: Optional[str] = None,
        session_start_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Retrieve snippets and, in "qa" mode, answer the query from them.

        A failed answer still returns the snippets, with mode "snippets"
        and the error message.
        """
        retrieved = await self.retrieve(
            query,
            k=k,
            search_full_history=search_full_history,
            session_id=session_id,
            class_id=class_id,
            session_start_ms=session_start_ms,
        )
        result: Dict[str, Any] = {
            "mode": "snippets",
            "snippets": retrieved["snippets"],
            "hits": retrieved["hits"],
            "diagnostics": retrieved["diagnostics"],
        }
        if mode != "qa":
            return result

        try:
            if llm is None:
                raise ConfigurationError("No language model provider configured")
            answer = await llm.call("answer", query, retrieved["snippets"], context)
        except Exception as e:
            logger.warning(f"Answer generation failed, returning snippets: {e}")
            result["error"] = str(e)
            return result

        result["mode"] = "qa"
        result["answer"] = answer
        return result


__all__ = [
    "HybridRetriever",
    "SearchBackend",
    "Hit",
    "keyword_score",
    "format_offset",
    "format_hit",
]
