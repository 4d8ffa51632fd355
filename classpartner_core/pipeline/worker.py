"""
AI Worker

Actor task owning all AI state for the active session: the rolling
buffer, the embedding indexer, the failover LLM and the summarizer.

The worker only talks to the host through two MessageChannels. Replies
to its own requests (history search, knowledge-base search, primer) are
resolved as soon as they arrive; every other message is processed in
arrival order by a separate loop, so a handler awaiting a reply never
blocks the reply itself.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from classpartner_core.config import Settings, get_settings
from classpartner_core.errors import ClassPartnerError, StorageError
from classpartner_core.knowledge.embeddings import EmbeddingProvider, EmbeddingProviderFactory
from classpartner_core.knowledge.indexer import EmbeddingIndexer
from classpartner_core.llm.base import LLMProvider, PromptContext, PromptSettings, ProviderConfig, ProviderKind
from classpartner_core.llm.failover import FailoverLLM
from classpartner_core.llm.providers import create_provider_pair, provider_configs_from_settings
from classpartner_core.pipeline.buffer import RollingBuffer
from classpartner_core.pipeline.messages import WORKER_RESULT_TYPES, Message, MessageChannel, MessageType
from classpartner_core.pipeline.requests import PendingRequests
from classpartner_core.pipeline.retrieval import HybridRetriever
from classpartner_core.pipeline.summarizer import ThrottledSummarizer
from classpartner_core.types import GLOBAL_CLASS_ID, MIN_PLAUSIBLE_MS, ContextSegment, Segment, now_ms

logger = logging.getLogger(__name__)


ProviderPair = Tuple[Optional[LLMProvider], Optional[LLMProvider]]
LLMFactory = Callable[[Dict[str, Any]], ProviderPair]
EmbeddingFactory = Callable[[Dict[str, Any]], Optional[EmbeddingProvider]]

# Assumed duration of a segment that arrives without a usable start
DEFAULT_SEGMENT_MS = 2000


# =============================================================================
# Provider factories
# =============================================================================


def settings_llm_factory(settings: Settings) -> LLMFactory:
    """
    Build providers from settings, overridden by the `provider:set` payload.

    Payload shape:
        {"mode": "hybrid-openai",
         "providers": {"openai": {"api_key": ..., "model": ..., "base_url": ...}}}
    """

    def factory(payload: Dict[str, Any]) -> ProviderPair:
        configs = provider_configs_from_settings(settings)
        for kind, overrides in (payload.get("providers") or {}).items():
            kind = ProviderKind(kind)
            base = configs.get(kind) or ProviderConfig(kind=kind)
            configs[kind] = ProviderConfig(
                kind=kind,
                api_key=overrides.get("api_key", base.api_key) or "",
                model=overrides.get("model") or base.model,
                base_url=overrides.get("base_url") or base.base_url,
                timeout=base.timeout,
            )
        return create_provider_pair(payload.get("mode") or settings.ai_mode, configs)

    return factory


def settings_embedding_factory(settings: Settings) -> EmbeddingFactory:
    """Payload shape: `{"embedding": {"provider": "local", "model": None}}`."""

    def factory(payload: Dict[str, Any]) -> Optional[EmbeddingProvider]:
        options = payload.get("embedding") or {}
        update = {}
        if "provider" in options:
            update["embedding_provider"] = options["provider"] or "none"
        if options.get("model"):
            update["embedding_model"] = options["model"]
        if options.get("api_key"):
            update["openai_api_key"] = options["api_key"]
        return EmbeddingProviderFactory.from_settings(settings.model_copy(update=update))

    return factory


# =============================================================================
# Worker
# =============================================================================


@dataclass
class WorkerState:
    """Everything that is discarded when a session starts or ends."""

    buffer: RollingBuffer
    summarizer: ThrottledSummarizer
    session_id: Optional[str] = None
    class_id: Optional[str] = None
    session_start_ms: Optional[int] = None
    context: PromptContext = field(default_factory=PromptContext)


class AIWorker:
    """
    Message-driven AI actor.

    Usage:
        worker = AIWorker(inbox, outbox, settings)
        task = asyncio.create_task(worker.run())
    """

    def __init__(
        self,
        inbox: MessageChannel,
        outbox: MessageChannel,
        settings: Optional[Settings] = None,
        llm_factory: Optional[LLMFactory] = None,
        embedding_factory: Optional[EmbeddingFactory] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.inbox = inbox
        self.outbox = outbox
        self.settings = settings or get_settings()
        self.llm_factory = llm_factory or settings_llm_factory(self.settings)
        self.embedding_factory = embedding_factory or settings_embedding_factory(self.settings)
        self._clock = clock

        self.pending = PendingRequests()
        self.prompt_settings = PromptSettings()
        self.llm: Optional[FailoverLLM] = None
        self.indexer = EmbeddingIndexer(None, on_log=self._log)
        self.state = self._new_state()

        self._work: "asyncio.Queue[Message]" = asyncio.Queue()
        self._summary_task: Optional[asyncio.Task] = None
        self._children: Set[asyncio.Task] = set()
        self._running = False

        self._handlers: Dict[MessageType, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            MessageType.PROVIDER_SET: self._on_provider_set,
            MessageType.PROMPT_SET: self._on_prompt_set,
            MessageType.SESSION_START: self._on_session_start,
            MessageType.SESSION_END: self._on_session_end,
            MessageType.SEGMENT: self._on_segment,
            MessageType.FLUSH: self._on_flush,
            MessageType.QUERY: self._on_query,
            MessageType.EMBED_CONTEXT: self._on_embed_context,
            MessageType.FORCE_BACKUP: self._on_force_backup,
        }

    def _new_state(self) -> WorkerState:
        return WorkerState(
            buffer=RollingBuffer(cap=self.settings.buffer_cap),
            summarizer=ThrottledSummarizer(
                min_interval_ms=self.settings.min_summarize_every_ms,
                window_ms=self.settings.summary_window_ms,
                min_chars=self.settings.min_summary_chars,
                clock=self._clock,
            ),
        )

    # =========================================================================
    # Loops
    # =========================================================================

    async def run(self) -> None:
        """Receive messages until shutdown."""
        self._running = True
        processor = asyncio.create_task(self._process_loop())
        try:
            while self._running:
                message = await self.inbox.receive()
                if message.type in WORKER_RESULT_TYPES:
                    self.pending.resolve(message.payload.get("request_id", ""), message.payload)
                    continue
                await self._work.put(message)
                if message.type == MessageType.SHUTDOWN:
                    break
            await processor
        finally:
            self._running = False
            if not processor.done():
                processor.cancel()
            await self._shutdown()

    async def _process_loop(self) -> None:
        while True:
            message = await self._work.get()
            if message.type == MessageType.SHUTDOWN:
                return
            handler = self._handlers.get(message.type)
            if handler is None:
                logger.warning(f"Worker ignoring message type {message.type}")
                continue
            try:
                await handler(message.payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._report(message.type.value, e)

    async def _shutdown(self) -> None:
        tasks = list(self._children)
        if self._summary_task is not None:
            tasks.append(self._summary_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.pending.cancel_all()
        if self.llm is not None:
            await self.llm.close()
        await self.indexer.close()
        logger.info("AI worker stopped")

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._children.add(task)
        task.add_done_callback(self._children.discard)
        return task

    # =========================================================================
    # Host communication
    # =========================================================================

    def _log(self, message: str) -> None:
        logger.info(message)
        self.outbox.send(MessageType.AI_LOG, {"message": message})

    def _report(self, where: str, error: BaseException) -> None:
        logger.warning(f"AI error in {where}: {error}")
        self.outbox.send(MessageType.AI_ERROR, {"where": where, "message": str(error)})

    async def _request(
        self,
        kind: str,
        message_type: MessageType,
        payload: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        request_id, future = self.pending.create(kind, self.settings.search_request_timeout_s)
        self.outbox.send(message_type, {"request_id": request_id, **payload})
        response = await future
        if response.get("error"):
            raise StorageError(f"{kind} failed: {response['error']}")
        return response.get("results") or []

    async def search_session(
        self,
        session_id: str,
        query_embedding: List[float],
        k: int,
        exclude_ids: List[str],
    ) -> List[Dict[str, Any]]:
        return await self._request(
            "disk_search",
            MessageType.DISK_SEARCH_REQUEST,
            {
                "session_id": session_id,
                "query_embedding": query_embedding,
                "k": k,
                "exclude_ids": exclude_ids,
            },
        )

    async def search_context(
        self,
        class_id: str,
        query_embedding: List[float],
        k: int,
        exclude_ids: List[str],
    ) -> List[Dict[str, Any]]:
        return await self._request(
            "context_search",
            MessageType.CONTEXT_SEARCH_REQUEST,
            {
                "class_id": class_id,
                "query_embedding": query_embedding,
                "k": k,
                "exclude_ids": exclude_ids,
            },
        )

    async def _load_primer(self, class_id: Optional[str]) -> int:
        scopes = [GLOBAL_CLASS_ID]
        if class_id and class_id != GLOBAL_CLASS_ID:
            scopes.insert(0, class_id)

        results = await asyncio.gather(
            *[
                self._request(
                    "context_primer",
                    MessageType.CONTEXT_PRIMER_REQUEST,
                    {"class_id": scope, "limit": self.settings.primer_size},
                )
                for scope in scopes
            ],
            return_exceptions=True,
        )

        primer: List[Segment] = []
        for scope, result in zip(scopes, results):
            if isinstance(result, BaseException):
                self._log(f"Primer load for {scope} failed: {result}")
                continue
            primer.extend(ContextSegment(**item).to_primer_segment() for item in result)
        return self.state.buffer.add_primer(primer)

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _on_provider_set(self, payload: Dict[str, Any]) -> None:
        primary, backup = self.llm_factory(payload)
        try:
            embedder = self.embedding_factory(payload)
        except ClassPartnerError as e:
            # Retrieval degrades to keyword matching; the LLM still gets configured
            self._report(MessageType.PROVIDER_SET.value, e)
            embedder = None

        if self.llm is not None:
            await self.llm.close()
        await self.indexer.close()

        self.llm = FailoverLLM(
            primary,
            backup,
            cooldown_s=self.settings.llm_cooldown_s,
            log_interval_s=self.settings.llm_throttle_log_interval_s,
            on_log=self._log,
        )
        self.indexer = EmbeddingIndexer(
            embedder,
            cooldown_s=self.settings.embed_cooldown_s,
            on_log=self._log,
        )
        self._log(
            f"LLM primary={primary.name if primary else 'none'}; "
            f"backup={backup.name if backup else 'none'}; "
            f"embeddings={embedder.name if embedder else 'none'}"
        )

    async def _on_prompt_set(self, payload: Dict[str, Any]) -> None:
        self.prompt_settings = PromptSettings.from_dict(payload)
        self.state.context = self.prompt_settings.resolve(self.state.class_id)

    async def _on_session_start(self, payload: Dict[str, Any]) -> None:
        await self._cancel_summary()
        self.state = self._new_state()
        self.state.session_id = payload.get("session_id")
        self.state.class_id = payload.get("class_id")
        self.state.session_start_ms = payload.get("start_ms") or self._clock()
        self.state.context = self.prompt_settings.resolve(self.state.class_id)

        loaded = await self._load_primer(self.state.class_id)
        if loaded:
            self._log(f"Loaded {loaded} primer chunks")

    async def _on_session_end(self, payload: Dict[str, Any]) -> None:
        if self._summary_task is not None and not self._summary_task.done():
            await asyncio.gather(self._summary_task, return_exceptions=True)
        if self.llm is not None and self.llm.is_configured:
            await self._run_summary(force=True)

        session_id = self.state.session_id
        self.state = self._new_state()
        self.outbox.send(
            MessageType.SESSION_ENDED,
            {"request_id": payload.get("request_id"), "session_id": session_id},
        )

    async def _on_segment(self, payload: Dict[str, Any]) -> None:
        segment = self._normalize(Segment.from_dict(payload))
        if self.state.session_id:
            segment.session_id = self.state.session_id

        evicted = self.state.buffer.append(segment)
        if evicted:
            logger.debug(f"Evicted {len(evicted)} segments from the rolling buffer")

        vector = await self.indexer.index_segment(self.state.buffer, segment)
        if vector is not None:
            segment.embedding = vector

        if segment.session_id:
            self.outbox.send(MessageType.SEGMENT_SAVE, {"segment": segment.to_dict()})

        self._schedule_summary()

    def _normalize(self, segment: Segment) -> Segment:
        """Coerce stream-relative or missing offsets to wall-clock milliseconds."""
        if segment.end_ms is None or segment.end_ms < MIN_PLAUSIBLE_MS:
            segment.end_ms = self._clock()
        if (
            segment.start_ms is None
            or segment.start_ms < MIN_PLAUSIBLE_MS
            or segment.start_ms > segment.end_ms
        ):
            segment.start_ms = segment.end_ms - DEFAULT_SEGMENT_MS
        return segment

    async def _on_flush(self, payload: Dict[str, Any]) -> None:
        self._schedule_summary()

    async def _on_query(self, payload: Dict[str, Any]) -> None:
        self._spawn(self._answer_query(payload))

    async def _answer_query(self, payload: Dict[str, Any]) -> None:
        request_id = payload.get("request_id")
        retriever = HybridRetriever(
            self.state.buffer,
            self.indexer,
            self,
            window_ms=self.settings.summary_window_ms,
            clock=self._clock,
        )
        try:
            result = await retriever.answer(
                payload.get("query", ""),
                self.llm,
                self.state.context,
                k=payload.get("k") or self.settings.retrieval_k,
                search_full_history=payload.get("search_full_history", True),
                mode=payload.get("mode", "qa"),
                session_id=self.state.session_id,
                class_id=self.state.class_id,
                session_start_ms=self.state.session_start_ms,
            )
        except Exception as e:
            self._report("query", e)
            self.outbox.send(MessageType.QUERY_RESULT, {"request_id": request_id, "error": str(e)})
            return
        self.outbox.send(MessageType.QUERY_RESULT, {"request_id": request_id, "result": result})

    async def _on_embed_context(self, payload: Dict[str, Any]) -> None:
        self._spawn(self._embed_context(payload))

    async def _embed_context(self, payload: Dict[str, Any]) -> None:
        embeddings = await self.indexer.embed_context_batch(payload.get("texts") or [])
        self.outbox.send(
            MessageType.EMBED_CONTEXT_RESULT,
            {"request_id": payload.get("request_id"), "embeddings": embeddings},
        )

    async def _on_force_backup(self, payload: Dict[str, Any]) -> None:
        if self.llm is None:
            self._log("No LLM configured; nothing to force")
            return
        self.llm.force_cooldown(payload.get("reason", "debug"))

    # =========================================================================
    # Summarization
    # =========================================================================

    def _schedule_summary(self) -> None:
        if self.llm is None or not self.llm.is_configured:
            return
        if self._summary_task is not None and not self._summary_task.done():
            return
        if self.state.summarizer.is_throttled():
            return
        self._summary_task = asyncio.create_task(self._run_summary())

    async def _run_summary(self, force: bool = False) -> None:
        try:
            update = await self.state.summarizer.maybe_summarize(
                self.state.buffer,
                self.llm,
                self.state.context,
                force=force,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._report("summarize", e)
            return
        if update is not None:
            self.outbox.send(MessageType.AI_UPDATE, update)

    async def _cancel_summary(self) -> None:
        if self._summary_task is not None and not self._summary_task.done():
            self._summary_task.cancel()
            await asyncio.gather(self._summary_task, return_exceptions=True)
        self._summary_task = None


__all__ = [
    "AIWorker",
    "WorkerState",
    "settings_llm_factory",
    "settings_embedding_factory",
]
