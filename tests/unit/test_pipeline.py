"""Tests for the AI pipeline host and worker working together."""

from typing import Any, Dict, List

import pytest
import pytest_asyncio

from classpartner_core.errors import ConfigurationError, LLMProviderError
from classpartner_core.llm import PromptSettings
from classpartner_core.pipeline import AIPipeline
from classpartner_core.types import ContextSegment, Segment, new_id, now_ms
from tests.conftest import FakeEmbeddings, ScriptedLLM, eventually, topic_vector


LECTURE = [
    "Good morning everyone, today we look at how mitochondria turn glucose into usable energy.",
    "Remember the exam on Friday covers chapters three and four, including entropy.",
]


class Recorder:
    """Collects pipeline events by name."""

    def __init__(self, pipeline: AIPipeline):
        self.events: Dict[str, List[Any]] = {"update": [], "log": [], "error": []}
        for name, items in self.events.items():
            pipeline.events.on(name, items.append)

    def __getitem__(self, name: str) -> List[Any]:
        return self.events[name]


def spoken(text: str, shift_ms: int = 0) -> Segment:
    end = now_ms() + shift_ms
    return Segment(text=text, start_ms=end - 2000, end_ms=end, timestamp=end)


async def seed_class_material(store, class_id: str = "bio") -> ContextSegment:
    source, _ = await store.create_source(class_id, "ch4.pdf", "hash-ch4")
    chunk = ContextSegment(
        id=new_id(),
        source_id=source.id,
        class_id=class_id,
        order_index=0,
        text="Chapter 4: mitochondria and cellular respiration",
        embedding=topic_vector("Chapter 4: mitochondria and cellular respiration"),
        metadata={"file_name": "ch4.pdf", "chunk_index": 0},
    )
    await store.save_context_segments([chunk])
    return chunk


def make_pipeline(store, settings, llm=None, embeddings=True) -> AIPipeline:
    return AIPipeline(
        store,
        settings=settings,
        llm_factory=lambda payload: (llm, None),
        embedding_factory=lambda payload: FakeEmbeddings() if embeddings else None,
    )


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest_asyncio.fixture
async def pipeline(store, settings, llm):
    ai = make_pipeline(store, settings, llm)
    await ai.start()
    yield ai
    await ai.stop()


class TestAIPipeline:
    """End-to-end tests through the worker boundary."""

    @pytest.mark.asyncio
    async def test_configure_reports_providers(self, pipeline):
        events = Recorder(pipeline)
        pipeline.configure_providers()

        await eventually(lambda: events["log"])
        assert events["log"][0]["message"] == "LLM primary=scripted; backup=none; embeddings=fake"

    @pytest.mark.asyncio
    async def test_lecture_flow(self, pipeline, store, llm):
        events = Recorder(pipeline)
        chunk = await seed_class_material(store)
        session = await store.create_session(class_id="bio")

        pipeline.configure_providers()
        pipeline.start_session(session.id, class_id="bio", start_ms=session.start_time)
        for i, text in enumerate(LECTURE):
            pipeline.push_segment(spoken(text, shift_ms=i * 10))

        result = await pipeline.query("mitochondria")

        assert result["mode"] == "qa"
        assert result["answer"] == "Mitochondria make ATP."
        assert result["diagnostics"]["used_embeddings"] is True
        hit_ids = [hit["id"] for hit in result["hits"]]
        assert chunk.id in hit_ids
        assert "[Class Context] Chapter 4: mitochondria and cellular respiration (ch4.pdf)" in result["snippets"]

        # Replies are dispatched in order, so both saves are done by now
        saved = await store.get_segments_by_session(session.id, with_embeddings=True)
        assert [s.text for s in saved] == LECTURE
        assert all(s.embedding for s in saved)

        ended = await pipeline.end_session()
        assert ended["session_id"] == session.id

        # One throttled summary during the lecture plus the forced one at the end
        assert len(events["update"]) == 2
        final = events["update"][-1]
        assert final["summary"] == "Lecture covered cell energy."
        assert final["keywords"] == ["mitochondria", "ATP"]
        assert events["error"] == []

    @pytest.mark.asyncio
    async def test_history_search_after_eviction(self, store, settings, llm):
        ai = make_pipeline(store, settings.model_copy(update={"buffer_cap": 1}), llm)
        await ai.start()
        try:
            session = await store.create_session()
            ai.configure_providers()
            ai.start_session(session.id)
            ai.push_segment(spoken("Photosynthesis happens in the chloroplast."))
            ai.push_segment(spoken("Entropy never decreases in an isolated system."))

            result = await ai.query("photosynthesis", mode="snippets")

            assert result["mode"] == "snippets"
            assert result["diagnostics"]["disk_hits"] == 1
            assert result["hits"][0]["text"] == "Photosynthesis happens in the chloroplast."
            assert result["hits"][0]["source"] == "disk"
        finally:
            await ai.stop()

    @pytest.mark.asyncio
    async def test_keyword_retrieval_without_embeddings(self, store, settings, llm):
        ai = make_pipeline(store, settings, llm, embeddings=False)
        await ai.start()
        try:
            session = await store.create_session()
            ai.configure_providers()
            ai.start_session(session.id)
            for i, text in enumerate(LECTURE):
                ai.push_segment(spoken(text, shift_ms=i * 10))

            result = await ai.query("exam", mode="snippets")

            assert result["diagnostics"]["used_embeddings"] is False
            assert [hit["text"] for hit in result["hits"]] == [LECTURE[1]]
        finally:
            await ai.stop()

    @pytest.mark.asyncio
    async def test_query_without_llm_returns_snippets(self, pipeline, store):
        session = await store.create_session()
        pipeline.start_session(session.id)
        pipeline.push_segment(spoken(LECTURE[0]))

        result = await pipeline.query("mitochondria")

        assert result["mode"] == "snippets"
        assert result["error"] == "No language model provider configured"

    @pytest.mark.asyncio
    async def test_summary_errors_are_reported(self, store, settings):
        failing = ScriptedLLM(error=LLMProviderError("invalid api key", status_code=401))
        ai = make_pipeline(store, settings, failing)
        events = Recorder(ai)
        await ai.start()
        try:
            session = await store.create_session()
            ai.configure_providers()
            ai.start_session(session.id)
            ai.push_segment(spoken(LECTURE[0]))

            await eventually(lambda: events["error"])
            assert events["error"][0] == {"where": "summarize", "message": "invalid api key"}
        finally:
            await ai.stop()

    @pytest.mark.asyncio
    async def test_persistence_failure_is_reported(self, pipeline, store, monkeypatch):
        events = Recorder(pipeline)

        async def broken(segment):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "save_segment", broken)
        pipeline.start_session("s-broken")
        pipeline.push_segment(spoken(LECTURE[0]))

        await eventually(lambda: events["error"])
        assert events["error"][0] == {"where": "persistence", "message": "disk full"}

    @pytest.mark.asyncio
    async def test_prompt_settings_reach_summaries(self, pipeline, store):
        events = Recorder(pipeline)
        session = await store.create_session(class_id="chem")

        pipeline.configure_providers()
        pipeline.set_prompt_settings(
            PromptSettings(global_guidelines="Be brief.", class_guidelines={"chem": "Balance equations."})
        )
        pipeline.start_session(session.id, class_id="chem")
        pipeline.push_segment(spoken(LECTURE[0]))

        await eventually(lambda: events["update"])
        context = events["update"][0]["context"]
        assert context["global_guidelines"] == "Be brief."
        assert context["class_guidelines"] == "Balance equations."

    @pytest.mark.asyncio
    async def test_embed_context_batch(self, pipeline):
        pipeline.configure_providers()
        vectors = await pipeline.embed_context_batch(["exam", "entropy"])
        assert vectors == [topic_vector("exam"), topic_vector("entropy")]

    @pytest.mark.asyncio
    async def test_force_backup_without_llm(self, pipeline):
        events = Recorder(pipeline)
        pipeline.force_backup()

        await eventually(lambda: events["log"])
        assert events["log"][0]["message"] == "No LLM configured; nothing to force"

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, store, settings):
        ai = make_pipeline(store, settings)
        await ai.start()
        assert ai.is_running
        await ai.stop()
        await ai.stop()
        assert not ai.is_running

    @pytest.mark.asyncio
    async def test_bad_embedding_config_keeps_llm(self, store, settings, llm):
        def no_key(payload):
            raise ConfigurationError("OpenAI API key missing", provider="openai")

        ai = AIPipeline(
            store,
            settings=settings,
            llm_factory=lambda payload: (llm, None),
            embedding_factory=no_key,
        )
        events = Recorder(ai)
        await ai.start()
        try:
            session = await store.create_session()
            ai.configure_providers()
            ai.start_session(session.id)
            ai.push_segment(spoken(LECTURE[0]))

            result = await ai.query("mitochondria")

            assert events["error"][0] == {"where": "provider:set", "message": "OpenAI API key missing"}
            assert events["log"][0]["message"] == "LLM primary=scripted; backup=none; embeddings=none"
            assert result["mode"] == "qa"
            assert result["answer"] == "Mitochondria make ATP."
            assert result["diagnostics"]["used_embeddings"] is False
        finally:
            await ai.stop()
