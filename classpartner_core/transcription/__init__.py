"""
Transcription

Live speech-to-text connection management.
"""

from classpartner_core.transcription.base import (
    ConnectionOptions,
    ConnectionQuality,
    ConnectionQualityMonitor,
    ConnectionStatus,
    QualityChange,
    TranscriptEvent,
)
from classpartner_core.transcription.deepgram import DeepgramConnection

__all__ = [
    "ConnectionOptions",
    "ConnectionQuality",
    "ConnectionQualityMonitor",
    "ConnectionStatus",
    "QualityChange",
    "TranscriptEvent",
    "DeepgramConnection",
]
