"""
Knowledge

Embedding providers, vector math, chunking and knowledge-base ingestion.
"""

from classpartner_core.knowledge.chunking import ChunkingConfig, RecursiveChunker
from classpartner_core.knowledge.embeddings import (
    EmbeddingConfig,
    EmbeddingProvider,
    EmbeddingProviderFactory,
    LocalEmbeddings,
    OpenAIEmbeddings,
)
from classpartner_core.knowledge.indexer import EmbeddingIndexer
from classpartner_core.knowledge.vectors import cosine_similarity, vector_norm

__all__ = [
    "ChunkingConfig",
    "RecursiveChunker",
    "EmbeddingConfig",
    "EmbeddingProvider",
    "EmbeddingProviderFactory",
    "LocalEmbeddings",
    "OpenAIEmbeddings",
    "EmbeddingIndexer",
    "cosine_similarity",
    "vector_norm",
]
