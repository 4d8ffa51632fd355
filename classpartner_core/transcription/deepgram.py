"""
Deepgram Live Connection

Streaming speech-to-text over the Deepgram websocket API with
exponential-backoff reconnection and latency tracking.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from classpartner_core.config import Settings
from classpartner_core.core.events import EventEmitter
from classpartner_core.errors import (
    ConfigurationError,
    ConnectionTimeoutError,
    ProviderConnectionError,
    TranscriptionError,
)
from classpartner_core.transcription.base import (
    ConnectionOptions,
    ConnectionQualityMonitor,
    ConnectionStatus,
    TranscriptEvent,
)
from classpartner_core.types import now_ms

logger = structlog.get_logger(__name__)


DEEPGRAM_LIVE_URL = "wss://api.deepgram.com/v1/listen"
NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006

Connector = Callable[[str, Dict[str, str]], Awaitable[Any]]


async def default_connector(url: str, headers: Dict[str, str]) -> Any:
    """Open a websocket; the caller enforces the timeout."""
    return await ws_connect(url, additional_headers=headers, open_timeout=None)


class DeepgramConnection:
    """
    Resilient live transcription connection.

    Events (subscribe via `connection.events.on(name, handler)`):
        status                 {"status": ConnectionStatus value}
        transcript             TranscriptEvent
        quality-change         {"quality", "latency", "measurements"}
        voice-activity         {"speaking": bool, "timestamp": float|None}
        metadata               raw provider metadata
        error                  {"message", "code"}
        max-reconnects-reached {"attempts": int}
    """

    def __init__(
        self,
        api_key: str,
        options: Optional[ConnectionOptions] = None,
        url: str = DEEPGRAM_LIVE_URL,
        connect_timeout: float = 10.0,
        base_delay: float = 1.0,
        max_attempts: int = 5,
        keepalive_interval: float = 8.0,
        quality_window: int = 10,
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api_key = api_key
        self.options = options or ConnectionOptions()
        self.url = url
        self.connect_timeout = connect_timeout
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.keepalive_interval = keepalive_interval

        self.events = EventEmitter()
        self.quality = ConnectionQualityMonitor(window=quality_window)
        self.status = ConnectionStatus.DISCONNECTED
        self.reconnect_attempts = 0
        self.stream_started_at_ms: Optional[int] = None

        self._connector = connector or default_connector
        self._clock = clock
        self._ws: Any = None
        self._closing = False
        self._last_send_time: Optional[float] = None

        self._receiver_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self.logger = logger.bind(provider="deepgram")

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "DeepgramConnection":
        options = ConnectionOptions(
            model=settings.deepgram_model,
            language=settings.deepgram_language,
            endpointing=settings.deepgram_endpointing,
            channels=settings.channels,
            sample_rate=settings.sample_rate,
            encoding=settings.encoding,
        )
        return cls(
            api_key=settings.deepgram_api_key,
            options=options,
            url=settings.deepgram_url,
            connect_timeout=settings.connect_timeout_s,
            base_delay=settings.reconnect_base_delay_s,
            max_attempts=settings.max_reconnect_attempts,
            keepalive_interval=settings.keepalive_interval_s,
            quality_window=settings.quality_window,
            **kwargs,
        )

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED and self._ws is not None

    def build_url(self) -> str:
        return f"{self.url}?{urlencode(self.options.to_query())}"

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff delay in seconds before reconnect attempt number `attempt`."""
        return self.base_delay * (2 ** attempt)

    async def connect(self) -> None:
        """
        Open the live stream.

        Raises:
            ConfigurationError: No API key configured
            ConnectionTimeoutError: The provider did not answer in time
            ProviderConnectionError: The handshake failed
        """
        if not self.api_key:
            raise ConfigurationError("Deepgram API key is required", provider="deepgram")
        if self.is_connected:
            return

        self._closing = False
        await self._set_status(ConnectionStatus.CONNECTING)

        headers = {"Authorization": f"Token {self.api_key}"}
        try:
            ws = await asyncio.wait_for(
                self._connector(self.build_url(), headers),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            error = ConnectionTimeoutError(
                f"Connection timed out after {self.connect_timeout}s",
                provider="deepgram",
            )
            await self._fail(error)
            raise error
        except Exception as e:
            error = ProviderConnectionError(f"Failed to connect: {e}", provider="deepgram")
            await self._fail(error)
            raise error from e

        self._ws = ws
        self.reconnect_attempts = 0
        self.stream_started_at_ms = now_ms()
        self._last_send_time = None
        await self._set_status(ConnectionStatus.CONNECTED)
        self.logger.info("deepgram_connected", model=self.options.model)

        self._receiver_task = asyncio.create_task(self._receive_loop(ws))
        if self.keepalive_interval > 0:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop(ws))

    async def send_audio(self, frame: bytes) -> bool:
        """Forward one PCM frame. Returns False when it could not be sent."""
        if not self.is_connected:
            return False

        self._last_send_time = self._clock()
        try:
            await self._ws.send(frame)
        except Exception as e:
            self.logger.warning("deepgram_send_failed", error=str(e))
            await self.events.emit("error", {"message": str(e), "code": "SEND_FAILED"})
            return False
        return True

    async def disconnect(self) -> None:
        """Close the stream and cancel any pending reconnect. Safe to call twice."""
        self._closing = True

        await self._cancel(self._reconnect_task)
        self._reconnect_task = None
        await self._cancel(self._keepalive_task)
        self._keepalive_task = None

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.send(json.dumps({"type": "CloseStream"}))
                await ws.close()
            except Exception as e:
                self.logger.debug("deepgram_close_error", error=str(e))

        await self._cancel(self._receiver_task)
        self._receiver_task = None

        if self.status != ConnectionStatus.DISCONNECTED:
            await self._set_status(ConnectionStatus.DISCONNECTED)
            self.logger.info("deepgram_disconnected")

    def get_connection_status(self) -> str:
        return self.status.value

    def get_connection_quality(self) -> Dict[str, Any]:
        return self.quality.snapshot()

    # =========================================================================
    # Internals
    # =========================================================================

    async def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        self.status = status
        await self.events.emit("status", {"status": status.value})

    async def _fail(self, error: TranscriptionError) -> None:
        self.logger.error("deepgram_error", code=error.code, error=error.message)
        await self._set_status(ConnectionStatus.ERROR)
        await self.events.emit("error", {"message": error.message, "code": error.code})

    async def _cancel(self, task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                await self._handle_message(raw)
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd is not None else ABNORMAL_CLOSURE
            await self._handle_close(ws, code)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_error(ws, e)
            return

        code = getattr(ws, "close_code", None)
        await self._handle_close(ws, code if code is not None else NORMAL_CLOSURE)

    async def _keepalive_loop(self, ws: Any) -> None:
        message = json.dumps({"type": "KeepAlive"})
        while True:
            await asyncio.sleep(self.keepalive_interval)
            try:
                await ws.send(message)
            except Exception as e:
                self.logger.debug("deepgram_keepalive_failed", error=str(e))
                return

    async def _handle_message(self, raw: Any) -> None:
        if isinstance(raw, (bytes, bytearray)):
            return
        try:
            data = json.loads(raw)
        except ValueError:
            self.logger.warning("deepgram_bad_message", raw=str(raw)[:200])
            return

        kind = data.get("type")
        if kind == "Results":
            await self._handle_results(data)
        elif kind == "SpeechStarted":
            await self.events.emit(
                "voice-activity", {"speaking": True, "timestamp": data.get("timestamp")}
            )
        elif kind == "UtteranceEnd":
            await self.events.emit(
                "voice-activity", {"speaking": False, "timestamp": data.get("last_word_end")}
            )
        elif kind == "Metadata":
            await self.events.emit("metadata", data)
        elif kind == "Error":
            message = data.get("description") or data.get("message") or "Provider error"
            await self.events.emit("error", {"message": message, "code": "PROVIDER_ERROR"})

    async def _handle_results(self, data: Dict[str, Any]) -> None:
        alternatives = (data.get("channel") or {}).get("alternatives") or []
        if not alternatives:
            return
        alt = alternatives[0]
        text = (alt.get("transcript") or "").strip()
        if not text:
            return

        latency_ms = None
        if self._last_send_time is not None:
            latency_ms = (self._clock() - self._last_send_time) * 1000
            change = self.quality.record(latency_ms)
            if change is not None:
                self.logger.info("deepgram_quality_changed", **change.to_dict())
                await self.events.emit("quality-change", change.to_dict())

        words = alt.get("words") or []
        if words:
            start_ms = int(float(words[0].get("start", 0)) * 1000)
            end_ms = int(float(words[-1].get("end", 0)) * 1000)
        else:
            start = float(data.get("start") or 0)
            start_ms = int(start * 1000)
            end_ms = int((start + float(data.get("duration") or 0)) * 1000)

        event = TranscriptEvent(
            text=text,
            is_final=bool(data.get("is_final")),
            confidence=alt.get("confidence"),
            start_ms=start_ms,
            end_ms=end_ms,
            speech_final=bool(data.get("speech_final")),
            latency_ms=round(latency_ms, 1) if latency_ms is not None else None,
            quality=self.quality.quality,
        )
        await self.events.emit("transcript", event)

    async def _handle_close(self, ws: Any, code: int) -> None:
        if ws is not self._ws and self._ws is not None:
            return
        await self._cancel(self._keepalive_task)
        self._keepalive_task = None
        self._ws = None

        if self._closing:
            return

        self.logger.info("deepgram_closed", code=code)
        await self._set_status(ConnectionStatus.CLOSED)
        if code != NORMAL_CLOSURE:
            await self._schedule_reconnect()
        else:
            await self._set_status(ConnectionStatus.DISCONNECTED)

    async def _handle_error(self, ws: Any, error: Exception) -> None:
        if self._closing:
            return
        await self._cancel(self._keepalive_task)
        self._keepalive_task = None
        self._ws = None
        try:
            await ws.close()
        except Exception:
            self.logger.debug("deepgram_close_after_error_failed")

        await self._fail(TranscriptionError(str(error), provider="deepgram"))
        await self._schedule_reconnect()

    async def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self.reconnect_attempts >= self.max_attempts:
            self.logger.error("deepgram_max_reconnects", attempts=self.reconnect_attempts)
            await self._set_status(ConnectionStatus.ERROR)
            await self.events.emit(
                "max-reconnects-reached", {"attempts": self.reconnect_attempts}
            )
            return

        delay = self.reconnect_delay(self.reconnect_attempts)
        self.reconnect_attempts += 1
        await self._set_status(ConnectionStatus.RECONNECTING)
        self.logger.info(
            "deepgram_reconnect_scheduled",
            attempt=self.reconnect_attempts,
            delay_s=delay,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._closing:
            return
        try:
            await self.connect()
        except TranscriptionError:
            await self._schedule_reconnect()


__all__ = ["DeepgramConnection", "ConnectionOptions", "default_connector"]
