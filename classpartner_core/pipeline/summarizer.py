"""
Throttled Summarizer

Produces the live summary, action items and keywords from the rolling
transcript window, at most once per throttle interval.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from classpartner_core.llm.base import PromptContext
from classpartner_core.llm.failover import FailoverLLM
from classpartner_core.pipeline.buffer import RollingBuffer
from classpartner_core.types import now_ms

logger = logging.getLogger(__name__)


class ThrottledSummarizer:
    """
    Rate-limited summarization over a RollingBuffer.

    The throttle stamp is taken before the LLM is called, so segments that
    arrive while a summary is in flight do not start another one.
    """

    def __init__(
        self,
        min_interval_ms: int = 12_000,
        window_ms: int = 60_000,
        min_chars: int = 80,
        clock: Callable[[], int] = now_ms,
    ):
        self.min_interval_ms = min_interval_ms
        self.window_ms = window_ms
        self.min_chars = min_chars
        self._clock = clock
        self.last_attempt_ms: Optional[int] = None

    def is_throttled(self) -> bool:
        if self.last_attempt_ms is None:
            return False
        return self._clock() - self.last_attempt_ms < self.min_interval_ms

    def rolling_text(self, buffer: RollingBuffer) -> str:
        return buffer.rolling_text(self._clock(), self.window_ms)

    def build_input(self, buffer: RollingBuffer) -> Optional[str]:
        """Combined primer and rolling text, or None when there is too little."""
        rolling = self.rolling_text(buffer)
        primer = buffer.primer_text().strip()

        if not rolling and not primer:
            return None
        if not primer and len(rolling) < self.min_chars:
            return None

        if primer:
            return f"Course material:\n{primer}\n\nLecture so far:\n{rolling}".strip()
        return rolling

    async def maybe_summarize(
        self,
        buffer: RollingBuffer,
        llm: FailoverLLM,
        context: Optional[PromptContext] = None,
        force: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """
        Summarize the current window unless throttled or too short.

        Returns:
            `{summary, actions, keywords, context, ts}` or None when skipped

        Raises:
            Whatever the failover wrapper raises; the caller reports it.
        """
        if not force and self.is_throttled():
            return None

        text = self.build_input(buffer)
        if text is None:
            return None

        context = context or PromptContext()
        self.last_attempt_ms = self._clock()

        summary, actions, keywords = await asyncio.gather(
            llm.call("summarize", text, context),
            llm.call("extract_actions", text, context),
            llm.call("keywords", text, context),
        )
        logger.debug(
            f"Summarized {len(text)} chars: {len(actions)} actions, {len(keywords)} keywords"
        )
        return {
            "summary": summary,
            "actions": actions,
            "keywords": keywords,
            "context": context.to_dict(),
            "ts": self._clock(),
        }

    def reset(self) -> None:
        self.last_attempt_ms = None


__all__ = ["ThrottledSummarizer"]
