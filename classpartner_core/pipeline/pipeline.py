"""
AI Pipeline Host

Host side of the AI worker: starts the actor task, forwards segments
and queries to it, and serves its persistence requests from the
TranscriptStore. Worker output is re-emitted as events.

Events:
    update: `{summary, actions, keywords, context, ts}`
    log: `{message}`
    error: `{where, message}`
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from classpartner_core.config import Settings, get_settings
from classpartner_core.core.events import EventEmitter
from classpartner_core.errors import ClassPartnerError
from classpartner_core.llm.base import PromptSettings
from classpartner_core.pipeline.messages import HOST_RESULT_TYPES, Message, MessageChannel, MessageType
from classpartner_core.pipeline.requests import PendingRequests
from classpartner_core.pipeline.worker import AIWorker, EmbeddingFactory, LLMFactory
from classpartner_core.storage.store import TranscriptStore
from classpartner_core.types import Segment, now_ms

logger = logging.getLogger(__name__)


_RESULT_FOR_REQUEST = {
    MessageType.DISK_SEARCH_REQUEST: MessageType.DISK_SEARCH_RESULT,
    MessageType.CONTEXT_SEARCH_REQUEST: MessageType.CONTEXT_SEARCH_RESULT,
    MessageType.CONTEXT_PRIMER_REQUEST: MessageType.CONTEXT_PRIMER_RESULT,
}


class AIPipeline:
    """
    Owns the AI worker and the store-facing half of its protocol.

    Usage:
        pipeline = AIPipeline(store, settings)
        await pipeline.start()
        pipeline.configure_providers()
        pipeline.start_session(session_id, class_id)
        pipeline.push_segment(segment)
        result = await pipeline.query("what is entropy?")
        await pipeline.end_session()
        await pipeline.stop()
    """

    def __init__(
        self,
        store: TranscriptStore,
        settings: Optional[Settings] = None,
        llm_factory: Optional[LLMFactory] = None,
        embedding_factory: Optional[EmbeddingFactory] = None,
        clock=now_ms,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.events = EventEmitter()
        self.pending = PendingRequests()

        self._to_worker = MessageChannel()
        self._from_worker = MessageChannel()
        self.worker = AIWorker(
            self._to_worker,
            self._from_worker,
            settings=self.settings,
            llm_factory=llm_factory,
            embedding_factory=embedding_factory,
            clock=clock,
        )

        self._worker_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        if self.is_running:
            return
        self._worker_task = asyncio.create_task(self.worker.run())
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        logger.info("AI pipeline started")

    async def stop(self, timeout: float = 5.0) -> None:
        if self._worker_task is None:
            return
        self._to_worker.send(MessageType.SHUTDOWN)
        try:
            await asyncio.wait_for(self._worker_task, timeout)
        except asyncio.TimeoutError:
            logger.warning("AI worker did not stop in time; cancelling")
            self._worker_task.cancel()
            await asyncio.gather(self._worker_task, return_exceptions=True)

        # Deliver whatever the worker produced before it stopped
        self._from_worker.send(MessageType.SHUTDOWN)
        if self._dispatch_task is not None:
            try:
                await asyncio.wait_for(self._dispatch_task, timeout)
            except asyncio.TimeoutError:
                self._dispatch_task.cancel()
                await asyncio.gather(self._dispatch_task, return_exceptions=True)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self.pending.cancel_all()
        self._worker_task = None
        self._dispatch_task = None
        logger.info("AI pipeline stopped")

    # =========================================================================
    # Commands
    # =========================================================================

    def configure_providers(self, payload: Optional[Dict[str, Any]] = None) -> None:
        """Select LLM and embedding providers; an empty payload uses settings."""
        self._to_worker.send(MessageType.PROVIDER_SET, payload or {})

    def set_prompt_settings(self, prompt_settings: PromptSettings) -> None:
        self._to_worker.send(MessageType.PROMPT_SET, prompt_settings.to_dict())

    def start_session(
        self,
        session_id: str,
        class_id: Optional[str] = None,
        start_ms: Optional[int] = None,
    ) -> None:
        self._to_worker.send(
            MessageType.SESSION_START,
            {"session_id": session_id, "class_id": class_id, "start_ms": start_ms},
        )

    async def end_session(self) -> Dict[str, Any]:
        """
        Final summary for the session, then reset of all in-memory AI state.

        Waits for a running summary plus one forced summary.
        """
        timeout = 2 * self.settings.llm_timeout_s + self.settings.query_timeout_s
        return await self._call(MessageType.SESSION_END, "session_end", {}, timeout)

    def push_segment(self, segment: Segment) -> None:
        self._to_worker.send(MessageType.SEGMENT, segment.to_dict())

    def flush(self) -> None:
        """Ask for a summary now, subject to the throttle."""
        self._to_worker.send(MessageType.FLUSH)

    def force_backup(self, reason: str = "debug") -> None:
        self._to_worker.send(MessageType.FORCE_BACKUP, {"reason": reason})

    async def query(
        self,
        text: str,
        k: Optional[int] = None,
        search_full_history: bool = True,
        mode: str = "qa",
    ) -> Dict[str, Any]:
        """
        Retrieve snippets for a question and, in "qa" mode, answer it.

        Returns:
            `{mode, answer?, snippets, hits, diagnostics, error?}`

        Raises:
            PendingRequestTimeout: No reply within the query timeout
        """
        response = await self._call(
            MessageType.QUERY,
            "query",
            {
                "query": text,
                "k": k or self.settings.retrieval_k,
                "search_full_history": search_full_history,
                "mode": mode,
            },
            self.settings.query_timeout_s,
        )
        if response.get("error"):
            raise ClassPartnerError(response["error"], code="QUERY_FAILED")
        return response["result"]

    async def embed_context_batch(self, texts: List[str]) -> Optional[List[List[float]]]:
        """Embed knowledge-base chunks with the worker's provider; None when unavailable."""
        response = await self._call(
            MessageType.EMBED_CONTEXT,
            "context_embed",
            {"texts": list(texts)},
            self.settings.query_timeout_s,
        )
        return response.get("embeddings")

    async def _call(
        self,
        message_type: MessageType,
        kind: str,
        payload: Dict[str, Any],
        timeout: float,
    ) -> Dict[str, Any]:
        request_id, future = self.pending.create(kind, timeout)
        self._to_worker.send(message_type, {"request_id": request_id, **payload})
        return await future

    # =========================================================================
    # Worker output
    # =========================================================================

    async def _dispatch_loop(self) -> None:
        while True:
            message = await self._from_worker.receive()
            if message.type == MessageType.SHUTDOWN:
                return
            try:
                await self._handle(message)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Failed to handle worker message {message.type.value}")

    async def _handle(self, message: Message) -> None:
        payload = message.payload

        if message.type in HOST_RESULT_TYPES:
            self.pending.resolve(payload.get("request_id") or "", payload)
        elif message.type == MessageType.SEGMENT_SAVE:
            # Inline so segments are written in arrival order
            await self._save_segment(payload["segment"])
        elif message.type in _RESULT_FOR_REQUEST:
            task = asyncio.create_task(self._serve(message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif message.type == MessageType.AI_UPDATE:
            await self.events.emit("update", payload)
        elif message.type == MessageType.AI_LOG:
            await self.events.emit("log", payload)
        elif message.type == MessageType.AI_ERROR:
            await self.events.emit("error", payload)
        else:
            logger.warning(f"Unexpected worker message {message.type.value}")

    async def _save_segment(self, data: Dict[str, Any]) -> None:
        try:
            await self.store.save_segment(Segment.from_dict(data))
        except Exception as e:
            logger.error(f"Failed to persist segment {data.get('id')}: {e}")
            await self.events.emit("error", {"where": "persistence", "message": str(e)})

    async def _serve(self, message: Message) -> None:
        payload = message.payload
        reply = {"request_id": payload.get("request_id")}
        try:
            reply["results"] = await self._run_request(message.type, payload)
        except Exception as e:
            logger.warning(f"{message.type.value} failed: {e}")
            reply["error"] = str(e)
        self._to_worker.send(_RESULT_FOR_REQUEST[message.type], reply)

    async def _run_request(self, message_type: MessageType, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        if message_type == MessageType.DISK_SEARCH_REQUEST:
            ranked = await self.store.search_similar(
                payload["session_id"],
                payload["query_embedding"],
                k=payload.get("k", self.settings.retrieval_k),
                exclude_ids=payload.get("exclude_ids") or [],
            )
            return [
                {
                    "id": segment.id,
                    "text": segment.text,
                    "start_ms": segment.start_ms,
                    "end_ms": segment.end_ms,
                    "score": score,
                    "file_name": None,
                    "class_id": None,
                }
                for segment, score in ranked
            ]

        if message_type == MessageType.CONTEXT_SEARCH_REQUEST:
            ranked = await self.store.search_similar_context(
                payload["class_id"],
                payload["query_embedding"],
                k=payload.get("k", self.settings.retrieval_k),
                exclude_ids=payload.get("exclude_ids") or [],
            )
            return [
                {
                    "id": chunk.id,
                    "text": chunk.text,
                    "start_ms": None,
                    "end_ms": None,
                    "score": score,
                    "file_name": chunk.file_name,
                    "class_id": chunk.class_id,
                }
                for chunk, score in ranked
            ]

        primer = await self.store.get_context_primer(
            payload["class_id"],
            limit=payload.get("limit", self.settings.primer_size),
        )
        return [chunk.to_dict() for chunk in primer]


__all__ = ["AIPipeline"]
