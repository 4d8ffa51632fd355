"""
Embedding Providers

Vectors for lecture segments, knowledge-base chunks and queries. Live
transcripts repeat short utterances ("okay", "right, so") constantly, so
providers normalize text, embed each distinct text once per call and keep
a small LRU cache across calls.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Type, Union

from classpartner_core.config import Settings
from classpartner_core.errors import ConfigurationError

logger = logging.getLogger(__name__)


LOCAL_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
OPENAI_MODEL = "text-embedding-3-small"
OPENAI_DIMENSIONS = 1536

DISABLED = ("", "none", "off")

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class EmbeddingConfig:
    """Configuration for embedding providers."""

    model: str = LOCAL_MODEL
    dimensions: Optional[int] = None
    batch_size: int = 64
    # Longer inputs are cut; a transcript segment or chunk is far shorter
    max_chars: int = 8000
    enable_cache: bool = True
    max_cache_entries: int = 2048


def prepare_text(text: str, max_chars: int) -> str:
    """Collapse whitespace and cap length."""
    return _WHITESPACE_RE.sub(" ", text or "").strip()[:max_chars]


class EmbeddingProvider(ABC):
    """
    Base class for embedding backends.

    Subclasses implement `_embed_batch` for a list of prepared, distinct,
    uncached texts. `embed` handles the rest and always returns one vector
    per input, in input order.
    """

    name: str = "base"

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or EmbeddingConfig()
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()

    @abstractmethod
    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        ...

    @abstractmethod
    def get_dimensions(self) -> int:
        ...

    async def embed(self, texts: Union[str, Sequence[str]]) -> List[List[float]]:
        if isinstance(texts, str):
            texts = [texts]

        prepared = [prepare_text(t, self.config.max_chars) for t in texts]
        vectors: Dict[str, List[float]] = {}
        missing: List[str] = []

        for text in prepared:
            if text in vectors or text in missing:
                continue
            cached = self._cache_get(text)
            if cached is not None:
                vectors[text] = cached
            else:
                missing.append(text)

        for start in range(0, len(missing), self.config.batch_size):
            batch = missing[start:start + self.config.batch_size]
            embedded = await self._embed_batch(batch)
            if len(embedded) != len(batch):
                raise ValueError(
                    f"{self.name} returned {len(embedded)} vectors for {len(batch)} texts"
                )
            for text, vector in zip(batch, embedded):
                vectors[text] = vector
                self._cache_put(text, vector)

        if missing:
            logger.debug(
                f"{self.name} embedded {len(missing)} texts "
                f"({len(prepared) - len(missing)} reused)"
            )
        return [vectors[text] for text in prepared]

    async def close(self) -> None:
        """Release client resources."""

    def _cache_get(self, text: str) -> Optional[List[float]]:
        if not self.config.enable_cache:
            return None
        vector = self._cache.get(text)
        if vector is not None:
            self._cache.move_to_end(text)
        return vector

    def _cache_put(self, text: str, vector: List[float]) -> None:
        if not self.config.enable_cache:
            return
        self._cache[text] = vector
        while len(self._cache) > self.config.max_cache_entries:
            self._cache.popitem(last=False)


class OpenAIEmbeddings(EmbeddingProvider):
    """OpenAI (or compatible) embeddings endpoint."""

    name = "openai"

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        super().__init__(config or EmbeddingConfig(model=OPENAI_MODEL))
        if not api_key:
            raise ConfigurationError("OpenAI API key missing", provider=self.name)
        self._api_key = api_key
        self._base_url = base_url
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise ConfigurationError(
                    "OpenAI embeddings need the openai package: pip install classpartner-core[openai]",
                    provider=self.name,
                ) from e
            self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        params = {"input": texts, "model": self.config.model}
        if self.config.dimensions:
            params["dimensions"] = self.config.dimensions

        response = await self._get_client().embeddings.create(**params)
        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]

    def get_dimensions(self) -> int:
        return self.config.dimensions or OPENAI_DIMENSIONS

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class LocalEmbeddings(EmbeddingProvider):
    """In-process sentence-transformers model, normalized output."""

    name = "local"

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        super().__init__(config)
        self._model = None

    def _get_model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise ConfigurationError(
                    "Local embeddings need sentence-transformers: pip install classpartner-core[local]",
                    provider=self.name,
                ) from e
            logger.info(f"Loading embedding model {self.config.model}")
            self._model = SentenceTransformer(self.config.model)
        return self._model

    def _encode(self, texts: List[str]) -> List[List[float]]:
        vectors = self._get_model().encode(
            texts,
            batch_size=self.config.batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return [vector.tolist() for vector in vectors]

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        # Model load and inference block
        return await asyncio.to_thread(self._encode, texts)

    def get_dimensions(self) -> int:
        return self._get_model().get_sentence_embedding_dimension()


class EmbeddingProviderFactory:
    """Registry of embedding backends by settings name."""

    _providers: Dict[str, Type[EmbeddingProvider]] = {
        "openai": OpenAIEmbeddings,
        "local": LocalEmbeddings,
    }

    @classmethod
    def register(cls, name: str, provider_class: Type[EmbeddingProvider]) -> None:
        cls._providers[name.lower()] = provider_class

    @classmethod
    def create(
        cls,
        provider: str,
        config: Optional[EmbeddingConfig] = None,
        **kwargs,
    ) -> EmbeddingProvider:
        provider_class = cls._providers.get(provider.lower())
        if provider_class is None:
            raise ConfigurationError(
                f"Unknown embedding provider: {provider}. "
                f"Available: {sorted(cls._providers)}"
            )
        return provider_class(config=config, **kwargs)

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional[EmbeddingProvider]:
        """Provider selected in settings, or None when embeddings are disabled."""
        name = (settings.embedding_provider or "").lower()
        if name in DISABLED:
            return None

        if name == "openai":
            return cls.create(
                "openai",
                config=EmbeddingConfig(model=settings.embedding_model or OPENAI_MODEL),
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
            )
        return cls.create(name, config=EmbeddingConfig(model=settings.embedding_model or LOCAL_MODEL))

    @classmethod
    def list_providers(cls) -> List[str]:
        return list(cls._providers)


__all__ = [
    "EmbeddingConfig",
    "EmbeddingProvider",
    "OpenAIEmbeddings",
    "LocalEmbeddings",
    "EmbeddingProviderFactory",
    "prepare_text",
]
