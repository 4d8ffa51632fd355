"""Unit tests for embedding indexing."""

import pytest

from classpartner_core.config import Settings
from classpartner_core.errors import ConfigurationError, EmbeddingError
from classpartner_core.knowledge import (
    EmbeddingIndexer,
    EmbeddingProviderFactory,
    LocalEmbeddings,
    OpenAIEmbeddings,
    cosine_similarity,
    vector_norm,
)
from classpartner_core.knowledge.vectors import rank_by_similarity
from classpartner_core.pipeline import RollingBuffer
from classpartner_core.types import Segment
from tests.conftest import FakeEmbeddings, topic_vector


class TestVectors:
    """Tests for vector helpers."""

    def test_cosine(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    @pytest.mark.parametrize("a,b", [(None, [1.0]), ([0.0, 0.0], [1.0, 1.0]), ([1.0], [1.0, 2.0])])
    def test_degenerate_inputs(self, a, b):
        assert cosine_similarity(a, b) == 0.0

    def test_norm(self):
        assert vector_norm([3.0, 4.0]) == pytest.approx(5.0)
        assert vector_norm(None) == 0.0

    def test_rank(self):
        ranked = rank_by_similarity(
            [1.0, 0.0],
            [("a", [0.0, 1.0]), ("b", [1.0, 0.1]), ("c", None)],
            limit=5,
        )
        assert [item for item, _ in ranked] == ["b", "a"]


class TestEmbeddingProviderFactory:
    """Tests for provider selection."""

    def test_list_providers(self):
        assert {"openai", "local"} <= set(EmbeddingProviderFactory.list_providers())

    def test_disabled(self):
        settings = Settings(_env_file=None, embedding_provider="none")
        assert EmbeddingProviderFactory.from_settings(settings) is None

    def test_local_default_model(self):
        settings = Settings(_env_file=None, embedding_provider="local")
        provider = EmbeddingProviderFactory.from_settings(settings)
        assert isinstance(provider, LocalEmbeddings)
        assert provider.config.model == "sentence-transformers/all-MiniLM-L6-v2"

    def test_openai_default_model(self):
        settings = Settings(_env_file=None, embedding_provider="openai", openai_api_key="sk")
        provider = EmbeddingProviderFactory.from_settings(settings)
        assert isinstance(provider, OpenAIEmbeddings)
        assert provider.config.model == "text-embedding-3-small"

    def test_unknown(self):
        with pytest.raises(ConfigurationError):
            EmbeddingProviderFactory.create("word2vec")


class TestEmbeddingProvider:
    """Tests for shared embed() behaviour."""

    @pytest.mark.asyncio
    async def test_repeated_texts_embedded_once(self, fake_embeddings):
        vectors = await fake_embeddings.embed(["okay", "  okay\n", "entropy", "okay"])

        assert fake_embeddings.calls == [["okay", "entropy"]]
        assert vectors == [topic_vector("okay")] * 2 + [topic_vector("entropy"), topic_vector("okay")]

    @pytest.mark.asyncio
    async def test_batches(self):
        provider = FakeEmbeddings()
        provider.config.batch_size = 2

        await provider.embed(["a", "b", "c"])

        assert provider.calls == [["a", "b"], ["c"]]


class TestEmbeddingIndexer:
    """Tests for EmbeddingIndexer."""

    @pytest.mark.asyncio
    async def test_index_segment_attaches_vector(self, fake_embeddings):
        indexer = EmbeddingIndexer(fake_embeddings)
        buffer = RollingBuffer()
        segment = Segment(text="entropy always increases")
        buffer.append(segment)

        vector = await indexer.index_segment(buffer, segment)

        assert vector == topic_vector("entropy always increases")
        assert buffer.vectors[0] == vector
        assert buffer.norms[0] > 0

    @pytest.mark.asyncio
    async def test_no_provider(self):
        indexer = EmbeddingIndexer(None)
        assert indexer.enabled is False
        assert await indexer.embed_text("anything") is None
        assert await indexer.embed_context_batch(["a"]) is None

    @pytest.mark.asyncio
    async def test_failure_keeps_placeholder(self):
        indexer = EmbeddingIndexer(FakeEmbeddings(fail_with=RuntimeError("model crashed")))
        buffer = RollingBuffer()
        segment = Segment(text="entropy")
        buffer.append(segment)

        assert await indexer.index_segment(buffer, segment) is None
        assert buffer.vectors == [None]
        assert buffer.norms == [0.0]
        assert indexer.enabled is True

    @pytest.mark.asyncio
    async def test_rate_limit_disables_for_cooldown(self):
        now = [0.0]
        messages = []
        provider = FakeEmbeddings(fail_with=EmbeddingError("quota exceeded", status_code=429))
        indexer = EmbeddingIndexer(
            provider,
            cooldown_s=600,
            clock=lambda: now[0],
            on_log=messages.append,
        )

        assert await indexer.embed_text("first") is None
        assert indexer.enabled is False
        assert messages == ["Embeddings rate-limited; disabling for 10 min."]

        # No provider call while disabled
        assert await indexer.embed_text("second") is None
        assert len(provider.calls) == 1

        now[0] = 601
        provider.fail_with = None
        assert await indexer.embed_text("entropy") == topic_vector("entropy")

    @pytest.mark.asyncio
    async def test_context_batch(self, fake_embeddings):
        indexer = EmbeddingIndexer(fake_embeddings)
        vectors = await indexer.embed_context_batch(["exam on friday", "photosynthesis"])

        assert vectors == [topic_vector("exam on friday"), topic_vector("photosynthesis")]
        assert len(fake_embeddings.calls) == 1

    @pytest.mark.asyncio
    async def test_context_batch_failure(self):
        indexer = EmbeddingIndexer(FakeEmbeddings(fail_with=RuntimeError("boom")))
        assert await indexer.embed_context_batch(["a", "b"]) is None
