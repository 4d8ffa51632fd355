"""Shared pytest fixtures for testing."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from classpartner_core.config import Settings
from classpartner_core.knowledge.embeddings import EmbeddingConfig, EmbeddingProvider
from classpartner_core.llm.base import ChatMessage, LLMProvider, ProviderConfig, ProviderKind
from classpartner_core.storage.database import DatabaseManager
from classpartner_core.storage.store import TranscriptStore


# =============================================================================
# Configuration
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the environment, on a temporary database."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        deepgram_api_key="dg_test_key",
        embedding_provider="none",
        openai_api_key="",
        openrouter_api_key="",
        gemini_api_key="",
    )


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def store(settings):
    """Initialized TranscriptStore on a temporary SQLite file."""
    db = DatabaseManager(settings.database_url)
    transcript_store = TranscriptStore(db, search_window=settings.search_window)
    await transcript_store.initialize()
    yield transcript_store
    await transcript_store.close()


# =============================================================================
# Fake Providers
# =============================================================================


# Each axis counts occurrences of one topic word
TOPIC_AXES = ["mitochondria", "photosynthesis", "entropy", "exam"]


def topic_vector(text: str) -> List[float]:
    lowered = text.lower()
    return [float(lowered.count(word)) for word in TOPIC_AXES] + [0.01]


class FakeEmbeddings(EmbeddingProvider):
    """Deterministic topic-count embeddings."""

    name = "fake"

    def __init__(self, fail_with: Optional[BaseException] = None):
        super().__init__(EmbeddingConfig(model="fake", enable_cache=False))
        self.fail_with = fail_with
        self.calls: List[List[str]] = []

    async def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise self.fail_with
        return [topic_vector(text) for text in texts]

    def get_dimensions(self) -> int:
        return len(TOPIC_AXES) + 1


class ScriptedLLM(LLMProvider):
    """Chat provider answering each operation with a fixed reply."""

    def __init__(
        self,
        name: str = "scripted",
        summary: str = "Lecture covered cell energy.",
        actions: str = '{"actions": [{"title": "Read chapter 4", "owner": null, "due": "Friday", "ts": null}]}',
        keywords: str = '{"keywords": ["mitochondria", "ATP"]}',
        answer: str = "Mitochondria make ATP.",
        error: Optional[BaseException] = None,
    ):
        super().__init__(ProviderConfig(kind=ProviderKind.OPENAI, api_key="test"))
        self.name = name
        self.replies = {
            "summary": summary,
            "actions": actions,
            "keywords": keywords,
            "answer": answer,
        }
        self.error = error
        self.calls: List[str] = []
        self.closed = False

    @staticmethod
    def classify(messages: List[ChatMessage]) -> str:
        system = messages[0].content
        if "action items" in system and "JSON" in system:
            return "actions"
        if "keywords" in system:
            return "keywords"
        if system.startswith("You are an assistant answering"):
            return "answer"
        return "summary"

    async def chat(
        self,
        messages: List[ChatMessage],
        temperature: float = 0.2,
        json_mode: bool = False,
    ) -> str:
        kind = self.classify(messages)
        self.calls.append(kind)
        if self.error is not None:
            raise self.error
        return self.replies[kind]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_embeddings() -> FakeEmbeddings:
    return FakeEmbeddings()


@pytest.fixture
def scripted_llm() -> ScriptedLLM:
    return ScriptedLLM()


# =============================================================================
# Fake WebSocket
# =============================================================================


_END = object()


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self):
        self.sent: List[Any] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self._incoming: "asyncio.Queue[Any]" = asyncio.Queue()

    def push(self, message: Dict[str, Any]) -> None:
        self._incoming.put_nowait(json.dumps(message))

    def push_error(self, error: BaseException) -> None:
        self._incoming.put_nowait(error)

    def end(self, code: int = 1000) -> None:
        self.close_code = code
        self._incoming.put_nowait(_END)

    async def send(self, data: Any) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.end(self.close_code or 1000)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    def sent_json(self) -> List[Dict[str, Any]]:
        return [json.loads(item) for item in self.sent if isinstance(item, str)]


class FakeConnector:
    """Connector returning FakeWebSockets, optionally failing first."""

    def __init__(self, failures: Optional[List[BaseException]] = None):
        self.failures = list(failures or [])
        self.sockets: List[FakeWebSocket] = []
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, url: str, headers: Dict[str, str]) -> FakeWebSocket:
        self.calls.append({"url": url, "headers": headers})
        if self.failures:
            raise self.failures.pop(0)
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeWebSocket:
        return self.sockets[-1]


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


def results_message(
    text: str,
    is_final: bool = True,
    start: float = 0.0,
    end: float = 1.0,
    confidence: float = 0.95,
) -> Dict[str, Any]:
    """A Deepgram live `Results` message."""
    words = []
    if text:
        words = [
            {"word": text.split()[0], "start": start, "end": start + 0.2},
            {"word": text.split()[-1], "start": end - 0.2, "end": end},
        ]
    return {
        "type": "Results",
        "is_final": is_final,
        "speech_final": is_final,
        "start": start,
        "duration": end - start,
        "channel": {
            "alternatives": [
                {"transcript": text, "confidence": confidence, "words": words}
            ]
        },
    }


async def settle(times: int = 5) -> None:
    """Let scheduled tasks run."""
    for _ in range(times):
        await asyncio.sleep(0)


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Wait until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
