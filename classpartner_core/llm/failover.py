"""
LLM Failover

Primary/backup wrapper around two chat providers. A throttled or
unavailable primary is put into a cooldown during which calls go to the
backup; once the cooldown expires the primary is tried again.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog

from classpartner_core.errors import ConfigurationError, is_retryable_error
from classpartner_core.llm.base import LLMProvider

logger = structlog.get_logger(__name__)


@dataclass
class ProviderHealth:
    """Call counters for one side of the pair."""

    provider: str
    total_requests: int = 0
    failed_requests: int = 0
    last_error: Optional[str] = None

    def record_success(self) -> None:
        self.total_requests += 1

    def record_failure(self, error: BaseException) -> None:
        self.total_requests += 1
        self.failed_requests += 1
        self.last_error = str(error)[:300]


class FailoverLLM:
    """
    Routes study-assistant calls to a primary provider with a backup.

    Usage:
        llm = FailoverLLM(primary, backup)
        summary = await llm.call("summarize", text, context)
    """

    def __init__(
        self,
        primary: Optional[LLMProvider],
        backup: Optional[LLMProvider] = None,
        cooldown_s: float = 300.0,
        log_interval_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        on_log: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            primary: Preferred provider, may be None if unconfigured
            backup: Provider used while the primary cools down
            cooldown_s: How long a throttled primary is skipped
            log_interval_s: Minimum spacing of cooldown-entry log lines
            clock: Monotonic time source in seconds
            on_log: Receives human-readable status lines
        """
        self.primary = primary
        self.backup = backup
        self.cooldown_s = cooldown_s
        self.log_interval_s = log_interval_s
        self._clock = clock
        self._on_log = on_log

        self._disabled_until = 0.0
        self._last_throttle_log_at: Optional[float] = None
        self._health: Dict[str, ProviderHealth] = {}

    @property
    def in_cooldown(self) -> bool:
        return self._clock() < self._disabled_until

    @property
    def is_configured(self) -> bool:
        return self.primary is not None or self.backup is not None

    def force_cooldown(self, reason: str = "forced") -> None:
        """Put the primary into cooldown on demand."""
        self._disabled_until = self._clock() + self.cooldown_s
        logger.info("llm_primary_forced_cooldown", reason=reason)
        self._emit("Primary LLM forced into cooldown")

    def reset(self) -> None:
        self._disabled_until = 0.0
        self._last_throttle_log_at = None

    async def call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        """
        Invoke `method` on the appropriate provider.

        Raises:
            ConfigurationError: Neither provider is configured
            Exception: Non-retryable primary errors, or the backup's error
        """
        if not self.is_configured:
            raise ConfigurationError("No language model provider configured")

        if self.primary is not None and not self.in_cooldown:
            try:
                return await self._invoke(self.primary, method, *args, **kwargs)
            except Exception as e:
                if not is_retryable_error(e):
                    raise
                self._enter_cooldown(e)
                if self.backup is None:
                    raise
                return await self._invoke(self.backup, method, *args, **kwargs)

        if self.backup is not None:
            return await self._invoke(self.backup, method, *args, **kwargs)

        # Cooling down with nothing else to use
        return await self._invoke(self.primary, method, *args, **kwargs)

    async def _invoke(self, provider: LLMProvider, method: str, *args: Any, **kwargs: Any) -> Any:
        health = self._health.setdefault(provider.name, ProviderHealth(provider.name))
        func = getattr(provider, method, None)
        if func is None:
            raise AttributeError(f"{provider.name} has no operation '{method}'")
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            health.record_failure(e)
            raise
        health.record_success()
        return result

    def _enter_cooldown(self, error: BaseException) -> None:
        now = self._clock()
        self._disabled_until = now + self.cooldown_s

        if (
            self._last_throttle_log_at is None
            or now - self._last_throttle_log_at >= self.log_interval_s
        ):
            self._last_throttle_log_at = now
            reason = str(error)[:120]
            minutes = round(self.cooldown_s / 60)
            logger.warning(
                "llm_primary_throttled",
                provider=self.primary.name if self.primary else None,
                cooldown_s=self.cooldown_s,
                reason=reason,
            )
            self._emit(f"LLM primary throttled ({reason}). Using backup for {minutes} min.")

    def _emit(self, message: str) -> None:
        if self._on_log is not None:
            self._on_log(message)

    def status(self) -> Dict[str, Any]:
        remaining = max(0.0, self._disabled_until - self._clock())
        return {
            "primary": self.primary.name if self.primary else None,
            "backup": self.backup.name if self.backup else None,
            "in_cooldown": remaining > 0,
            "cooldown_remaining_s": round(remaining, 1),
            "health": {name: vars(h).copy() for name, h in self._health.items()},
        }

    async def close(self) -> None:
        for provider in (self.primary, self.backup):
            if provider is not None:
                await provider.close()


__all__ = ["FailoverLLM", "ProviderHealth"]
