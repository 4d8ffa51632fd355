"""
Recording Session Controller

Ties one recording session together: the persisted session row, the
streaming transcription connection and the AI pipeline. Final
transcripts become segments for the pipeline; interim ones are only
forwarded to listeners.
"""

import logging
from typing import Any, Callable, Dict, Optional

from classpartner_core.config import Settings, get_settings
from classpartner_core.core.events import EventEmitter
from classpartner_core.errors import ClassPartnerError
from classpartner_core.pipeline.pipeline import AIPipeline
from classpartner_core.storage.store import TranscriptStore
from classpartner_core.transcription.base import TranscriptEvent
from classpartner_core.transcription.deepgram import DeepgramConnection
from classpartner_core.types import Segment, TranscriptSession, now_ms

logger = logging.getLogger(__name__)


ConnectionFactory = Callable[[Settings], DeepgramConnection]


class SessionController:
    """
    Single active recording session.

    Events:
        transcript: TranscriptEvent.to_dict() for interim and final results
        status: connection status changes
        quality-change: connection quality transitions
        error: `{message, code?, fatal?}`
        session-ended: TranscriptSession.to_dict()
    """

    def __init__(
        self,
        store: TranscriptStore,
        pipeline: AIPipeline,
        connection_factory: Optional[ConnectionFactory] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.settings = settings or get_settings()
        self.connection_factory = connection_factory or DeepgramConnection.from_settings
        self.events = EventEmitter()

        self.session: Optional[TranscriptSession] = None
        self.connection: Optional[DeepgramConnection] = None
        self._ending = False

    @property
    def is_active(self) -> bool:
        return self.session is not None

    async def start(self, class_id: Optional[str] = None) -> TranscriptSession:
        """
        Open a session and connect the transcription stream.

        Raises:
            ClassPartnerError: A session is already active
            ConfigurationError: No transcription API key
            TranscriptionError: The stream could not be opened
        """
        if self.session is not None:
            raise ClassPartnerError("A recording session is already active", code="SESSION_ACTIVE")

        session = await self.store.create_session(class_id=class_id, start_time=now_ms())
        self.session = session
        self.pipeline.start_session(session.id, class_id=class_id, start_ms=session.start_time)

        connection = self.connection_factory(self.settings)
        connection.events.on("transcript", self._on_transcript)
        connection.events.on("status", self._forward("status"))
        connection.events.on("quality-change", self._forward("quality-change"))
        connection.events.on("error", self._forward("error"))
        connection.events.on("max-reconnects-reached", self._on_max_reconnects)
        self.connection = connection

        try:
            await connection.connect()
        except Exception:
            logger.exception(f"Failed to start session {session.id}")
            await self._finish()
            raise

        logger.info(f"Session {session.id} started", extra={"class_id": class_id})
        return session

    async def send_audio(self, frame: bytes) -> bool:
        if self.connection is None:
            return False
        return await self.connection.send_audio(frame)

    async def end(self) -> Optional[TranscriptSession]:
        """Close the stream, run the final summary and close the session row."""
        if self.session is None or self._ending:
            return None
        return await self._finish()

    async def _finish(self) -> Optional[TranscriptSession]:
        self._ending = True
        session = self.session
        try:
            if self.connection is not None:
                await self.connection.disconnect()
            try:
                await self.pipeline.end_session()
            except ClassPartnerError as e:
                logger.warning(f"Final summary for session {session.id} failed: {e}")
            ended = await self.store.end_session(session.id)
        finally:
            self.connection = None
            self.session = None
            self._ending = False

        if ended is not None:
            logger.info(
                f"Session {ended.id} ended",
                extra={"segments": ended.segment_count, "words": ended.word_count},
            )
            await self.events.emit("session-ended", ended.to_dict())
        return ended

    def _forward(self, event: str) -> Callable[[Any], Any]:
        async def handler(payload: Any) -> None:
            await self.events.emit(event, payload)
        return handler

    async def _on_transcript(self, event: TranscriptEvent) -> None:
        await self.events.emit("transcript", event.to_dict())
        if not event.is_final or self.session is None:
            return

        # Stream offsets become wall-clock times
        origin = self.connection.stream_started_at_ms if self.connection else None
        start_ms = origin + event.start_ms if origin is not None and event.start_ms is not None else None
        end_ms = origin + event.end_ms if origin is not None and event.end_ms is not None else None

        self.pipeline.push_segment(
            Segment(
                text=event.text,
                session_id=self.session.id,
                start_ms=start_ms,
                end_ms=end_ms,
                confidence=event.confidence,
            )
        )

    async def _on_max_reconnects(self, payload: Dict[str, Any]) -> None:
        await self.events.emit(
            "error",
            {
                "message": "Transcription connection lost; ending session",
                "code": "MAX_RECONNECTS",
                "fatal": True,
                **payload,
            },
        )
        if self.session is not None and not self._ending:
            await self._finish()


__all__ = ["SessionController"]
