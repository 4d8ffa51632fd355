"""Unit tests for hybrid retrieval."""

from typing import Any, Dict, List

import pytest

from classpartner_core.errors import LLMProviderError, StorageError
from classpartner_core.knowledge import EmbeddingIndexer
from classpartner_core.llm import FailoverLLM, PromptContext
from classpartner_core.pipeline import (
    HybridRetriever,
    RollingBuffer,
    format_hit,
    format_offset,
    keyword_score,
)
from classpartner_core.pipeline.retrieval import Hit
from classpartner_core.types import Segment
from tests.conftest import ScriptedLLM, topic_vector


SESSION_START = 1_700_000_000_000


class FakeBackend:
    """Persisted-history searches answered from canned results."""

    def __init__(self, session_hits=None, context_hits=None, fail_session=False):
        self.session_hits = session_hits or []
        self.context_hits: Dict[str, List[Dict[str, Any]]] = context_hits or {}
        self.fail_session = fail_session
        self.calls: List[tuple] = []

    async def search_session(self, session_id, query_embedding, k, exclude_ids):
        self.calls.append(("session", session_id, list(exclude_ids)))
        if self.fail_session:
            raise StorageError("database is locked")
        return self.session_hits

    async def search_context(self, class_id, query_embedding, k, exclude_ids):
        self.calls.append(("context", class_id, list(exclude_ids)))
        return self.context_hits.get(class_id, [])


def lecture(text: str, offset_s: int, embed: bool = True) -> Segment:
    start = SESSION_START + offset_s * 1000
    return Segment(
        text=text,
        session_id="s1",
        start_ms=start,
        end_ms=start + 2000,
        embedding=topic_vector(text) if embed else None,
    )


def primer(text: str, embed: bool = False) -> Segment:
    return Segment(
        text=text,
        context_scope="class",
        file_name="syllabus.pdf",
        embedding=topic_vector(text) if embed else None,
    )


class TestFormatting:
    """Tests for snippet formatting helpers."""

    @pytest.mark.parametrize("ms,expected", [
        (None, "--:--"),
        (0, "00:00"),
        (61_000, "01:01"),
        (3_725_000, "62:05"),
        (-1_000, "00:00"),
    ])
    def test_format_offset(self, ms, expected):
        assert format_offset(ms) == expected

    def test_lecture_hit_relative_to_session(self):
        hit = Hit(id="a", text="ATP synthase", score=0.9, source="memory",
                  start_ms=SESSION_START + 61_000, end_ms=SESSION_START + 63_000)
        assert format_hit(hit, SESSION_START) == "• [01:01-01:03] ATP synthase"

    def test_context_hits(self):
        global_hit = Hit(id="g", text="Late work loses 10%", score=0.5, source="global",
                         file_name="policy.md", scope="global")
        class_hit = Hit(id="c", text="Lab on Tuesday", score=0.5, source="class", scope="class")

        assert format_hit(global_hit, None) == "• [Global Context] Late work loses 10% (policy.md)"
        assert format_hit(class_hit, None) == "• [Class Context] Lab on Tuesday"


class TestKeywordScore:
    """Tests for keyword_score."""

    def test_full_query_containment(self):
        assert keyword_score("mitochondria", "Mitochondria make ATP") == pytest.approx(12 / 22)

    def test_partial_words(self):
        # "how" and "do" do not count
        assert keyword_score("how do cells divide", "cells divide by mitosis") == pytest.approx(11 / 24)

    def test_no_match(self):
        assert keyword_score("entropy", "cells divide") == 0.0
        assert keyword_score("", "anything") == 0.0


class TestHybridRetriever:
    """Tests for HybridRetriever."""

    @pytest.mark.asyncio
    async def test_ranks_memory_disk_and_context(self, fake_embeddings):
        buffer = RollingBuffer()
        mito = lecture("mitochondria produce ATP", 61)
        buffer.append(mito)
        buffer.append(lecture("entropy of the universe", 90))

        backend = FakeBackend(
            session_hits=[{"id": "d1", "text": "Earlier: mitochondria", "score": 0.99,
                           "start_ms": SESSION_START + 5_000, "end_ms": SESSION_START + 7_000}],
            context_hits={
                "bio": [{"id": "c1", "text": "Chapter 4: Mitochondria", "score": 0.5,
                         "file_name": "ch4.pdf"}],
                "global": [{"id": "g1", "text": "Office hours Friday", "score": 0.4,
                            "file_name": "policy.md"}],
            },
        )
        retriever = HybridRetriever(buffer, EmbeddingIndexer(fake_embeddings), backend)

        result = await retriever.retrieve(
            "what do mitochondria do",
            k=3,
            session_id="s1",
            class_id="bio",
            session_start_ms=SESSION_START,
        )

        assert [hit["id"] for hit in result["hits"]] == [mito.id, "d1", "c1"]
        assert result["snippets"].split("\n") == [
            "• [01:01-01:03] mitochondria produce ATP",
            "• [00:05-00:07] Earlier: mitochondria",
            "• [Class Context] Chapter 4: Mitochondria (ch4.pdf)",
        ]
        diagnostics = result["diagnostics"]
        assert diagnostics["used_embeddings"] is True
        assert diagnostics["memory_hits"] == 2
        assert diagnostics["disk_hits"] == 1
        assert diagnostics["class_hits"] == 1
        assert diagnostics["global_hits"] == 1

        # Buffered segments are excluded from the disk search
        assert backend.calls[0] == ("session", "s1", buffer.ids())

    @pytest.mark.asyncio
    async def test_duplicate_ids_keep_best_score(self, fake_embeddings):
        buffer = RollingBuffer()
        mito = lecture("mitochondria", 1)
        buffer.append(mito)
        backend = FakeBackend(session_hits=[{"id": mito.id, "text": "mitochondria", "score": 0.2}])
        retriever = HybridRetriever(buffer, EmbeddingIndexer(fake_embeddings), backend)

        result = await retriever.retrieve("mitochondria", k=5, session_id="s1")

        assert [hit["id"] for hit in result["hits"]] == [mito.id]
        assert result["hits"][0]["source"] == "memory"

    @pytest.mark.asyncio
    async def test_search_scope(self, fake_embeddings):
        backend = FakeBackend()
        retriever = HybridRetriever(RollingBuffer(), EmbeddingIndexer(fake_embeddings), backend)

        await retriever.retrieve("exam", search_full_history=False, session_id="s1", class_id="global")

        assert backend.calls == [("context", "global", [])]

    @pytest.mark.asyncio
    async def test_remote_failure_is_tolerated(self, fake_embeddings):
        buffer = RollingBuffer()
        buffer.append(lecture("exam next week", 10))
        backend = FakeBackend(fail_session=True)
        retriever = HybridRetriever(buffer, EmbeddingIndexer(fake_embeddings), backend)

        result = await retriever.retrieve("exam", session_id="s1", class_id="bio")

        assert result["diagnostics"]["disk_hits"] == 0
        assert [hit["text"] for hit in result["hits"]] == ["exam next week"]

    @pytest.mark.asyncio
    async def test_keyword_mode_without_embeddings(self):
        buffer = RollingBuffer()
        buffer.append(lecture("the exam is on friday", 10, embed=False))
        buffer.append(lecture("we discussed entropy", 20, embed=False))
        backend = FakeBackend()
        retriever = HybridRetriever(buffer, EmbeddingIndexer(None), backend)

        result = await retriever.retrieve("exam", k=1, session_id="s1", class_id="bio")

        assert [hit["text"] for hit in result["hits"]] == ["the exam is on friday"]
        assert result["diagnostics"]["used_embeddings"] is False
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_primer_backfill(self, fake_embeddings):
        buffer = RollingBuffer()
        buffer.add_primer([primer("Lab safety rules")])
        buffer.append(lecture("photosynthesis in leaves", 30))
        retriever = HybridRetriever(buffer, EmbeddingIndexer(fake_embeddings), FakeBackend())

        result = await retriever.retrieve("photosynthesis", k=3, session_start_ms=SESSION_START)

        assert result["snippets"].split("\n") == [
            "• [00:30-00:32] photosynthesis in leaves",
            "• [Class Context] Lab safety rules (syllabus.pdf)",
        ]

    @pytest.mark.asyncio
    async def test_rolling_summary_in_diagnostics(self):
        buffer = RollingBuffer()
        buffer.append(lecture("x" * 1000, 0, embed=False))
        retriever = HybridRetriever(
            buffer,
            EmbeddingIndexer(None),
            FakeBackend(),
            clock=lambda: SESSION_START + 10_000,
        )

        result = await retriever.retrieve("y")
        assert result["diagnostics"]["rolling_summary"] == "x" * 800


class TestAnswer:
    """Tests for question answering over retrieved snippets."""

    @pytest.fixture
    def retriever(self, fake_embeddings) -> HybridRetriever:
        buffer = RollingBuffer()
        buffer.append(lecture("mitochondria produce ATP", 5))
        return HybridRetriever(buffer, EmbeddingIndexer(fake_embeddings), FakeBackend())

    @pytest.mark.asyncio
    async def test_qa(self, retriever, scripted_llm):
        result = await retriever.answer(
            "mitochondria?", FailoverLLM(scripted_llm), PromptContext(), session_id="s1"
        )

        assert result["mode"] == "qa"
        assert result["answer"] == "Mitochondria make ATP."
        assert "mitochondria produce ATP" in result["snippets"]
        assert scripted_llm.calls == ["answer"]

    @pytest.mark.asyncio
    async def test_snippets_mode_skips_llm(self, retriever, scripted_llm):
        result = await retriever.answer("mitochondria?", FailoverLLM(scripted_llm), mode="snippets")

        assert result["mode"] == "snippets"
        assert "answer" not in result
        assert scripted_llm.calls == []

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_snippets(self, retriever):
        failing = ScriptedLLM(error=LLMProviderError("bad request", status_code=400))

        result = await retriever.answer("mitochondria?", FailoverLLM(failing))

        assert result["mode"] == "snippets"
        assert result["error"] == "bad request"
        assert result["snippets"]

    @pytest.mark.asyncio
    async def test_no_llm(self, retriever):
        result = await retriever.answer("mitochondria?", None)

        assert result["mode"] == "snippets"
        assert result["error"] == "No language model provider configured"
