"""
Pending Requests

Correlation of request/response pairs that cross the worker boundary.
Each request gets a random id and a timeout; late or unknown replies
are ignored.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from classpartner_core.errors import PendingRequestTimeout

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    kind: str
    future: asyncio.Future
    timer: asyncio.TimerHandle


class PendingRequests:
    """Registry of in-flight requests awaiting a correlated reply."""

    def __init__(self):
        self._pending: Dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._pending

    def create(self, kind: str, timeout: float) -> Tuple[str, asyncio.Future]:
        """Register a request and return its id and the future to await."""
        loop = asyncio.get_running_loop()
        request_id = f"{kind}_{uuid.uuid4().hex[:12]}"
        future = loop.create_future()
        timer = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = PendingRequest(kind, future, timer)
        return request_id, future

    def _expire(self, request_id: str, timeout: float) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.future.done():
            return
        logger.warning(f"{entry.kind} request {request_id} timed out after {timeout}s")
        entry.future.set_exception(
            PendingRequestTimeout(
                f"{entry.kind} request timed out after {timeout}s",
                request_id=request_id,
            )
        )

    def resolve(self, request_id: str, result: Any) -> bool:
        """Complete a request. Returns False for unknown or stale ids."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            logger.debug(f"Ignoring reply for unknown request {request_id}")
            return False
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_result(result)
        return True

    def reject(self, request_id: str, error: BaseException) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def cancel_all(self) -> int:
        count = len(self._pending)
        for entry in self._pending.values():
            entry.timer.cancel()
            if not entry.future.done():
                entry.future.cancel()
        self._pending.clear()
        return count


__all__ = ["PendingRequests", "PendingRequest"]
