"""
Worker Messages

Message envelope and channel used between the pipeline host and the AI
worker task. Payloads are deep-copied on send so neither side can see
the other's mutations.
"""

import asyncio
import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class MessageType(str, Enum):
    """Message types exchanged with the AI worker."""

    # Host -> worker
    PROVIDER_SET = "provider:set"
    PROMPT_SET = "prompt:set"
    SESSION_START = "session:start"
    SESSION_END = "session:end"
    SEGMENT = "segment"
    FLUSH = "flush"
    QUERY = "query"
    EMBED_CONTEXT = "context:embed"
    FORCE_BACKUP = "debug:force-backup"
    SHUTDOWN = "shutdown"

    # Host -> worker, answers to worker requests
    DISK_SEARCH_RESULT = "disk-search:result"
    CONTEXT_SEARCH_RESULT = "context-search:result"
    CONTEXT_PRIMER_RESULT = "context-primer:result"

    # Worker -> host
    AI_UPDATE = "ai:update"
    AI_LOG = "ai:log"
    AI_ERROR = "ai:error"
    QUERY_RESULT = "ai:query:result"
    EMBED_CONTEXT_RESULT = "context:embed:result"
    SESSION_ENDED = "session:ended"
    SEGMENT_SAVE = "segment:save"
    DISK_SEARCH_REQUEST = "disk-search:request"
    CONTEXT_SEARCH_REQUEST = "context-search:request"
    CONTEXT_PRIMER_REQUEST = "context-primer:request"


# Replies the worker correlates with its own pending requests
WORKER_RESULT_TYPES = frozenset({
    MessageType.DISK_SEARCH_RESULT,
    MessageType.CONTEXT_SEARCH_RESULT,
    MessageType.CONTEXT_PRIMER_RESULT,
})

# Replies the host correlates with its own pending requests
HOST_RESULT_TYPES = frozenset({
    MessageType.QUERY_RESULT,
    MessageType.EMBED_CONTEXT_RESULT,
    MessageType.SESSION_ENDED,
})


@dataclass
class Message:
    type: MessageType
    payload: Dict[str, Any] = field(default_factory=dict)


class MessageChannel:
    """One-directional, unbounded message queue."""

    def __init__(self):
        self._queue: "asyncio.Queue[Message]" = asyncio.Queue()

    def send(self, message_type: MessageType, payload: Optional[Dict[str, Any]] = None) -> None:
        self._queue.put_nowait(Message(message_type, copy.deepcopy(payload or {})))

    async def receive(self) -> Message:
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()


__all__ = [
    "MessageType",
    "Message",
    "MessageChannel",
    "WORKER_RESULT_TYPES",
    "HOST_RESULT_TYPES",
]
