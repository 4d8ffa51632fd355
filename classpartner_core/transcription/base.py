"""
Transcription Base Types

Connection states, transcript events and the latency-based connection
quality monitor.
"""

from collections import deque
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Deque, Dict, Optional


class ConnectionStatus(str, Enum):
    """Lifecycle states of the streaming connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    ERROR = "error"


class ConnectionQuality(str, Enum):
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


@dataclass
class ConnectionOptions:
    """Live transcription request parameters."""

    model: str = "nova-2"
    language: str = "en"
    smart_format: bool = True
    interim_results: bool = True
    endpointing: int = 150  # ms of silence that ends an utterance
    vad_events: bool = True
    channels: int = 1
    sample_rate: int = 16000
    encoding: str = "linear16"

    def to_query(self) -> Dict[str, str]:
        params = {}
        for key, value in asdict(self).items():
            params[key] = str(value).lower() if isinstance(value, bool) else str(value)
        return params


@dataclass
class TranscriptEvent:
    """A transcript result, interim or final."""

    text: str
    is_final: bool
    confidence: Optional[float] = None
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None
    speech_final: bool = False
    latency_ms: Optional[float] = None
    quality: ConnectionQuality = ConnectionQuality.GOOD

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["quality"] = self.quality.value
        return data


@dataclass
class QualityChange:
    quality: ConnectionQuality
    latency: float
    measurements: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quality": self.quality.value,
            "latency": self.latency,
            "measurements": self.measurements,
        }


class ConnectionQualityMonitor:
    """
    Rolling average of send-to-transcript latency.

    Average below `good_ms` is good, below `fair_ms` fair, otherwise poor.
    """

    def __init__(self, window: int = 10, good_ms: float = 200.0, fair_ms: float = 500.0):
        self.good_ms = good_ms
        self.fair_ms = fair_ms
        self._samples: Deque[float] = deque(maxlen=window)
        self.quality = ConnectionQuality.GOOD

    @property
    def average_latency(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)

    @property
    def measurements(self) -> int:
        return len(self._samples)

    def classify(self, average: float) -> ConnectionQuality:
        if average < self.good_ms:
            return ConnectionQuality.GOOD
        if average < self.fair_ms:
            return ConnectionQuality.FAIR
        return ConnectionQuality.POOR

    def record(self, latency_ms: float) -> Optional[QualityChange]:
        """Add a sample. Returns a QualityChange only when the label changes."""
        self._samples.append(latency_ms)
        average = self.average_latency
        label = self.classify(average)
        if label == self.quality:
            return None
        self.quality = label
        return QualityChange(quality=label, latency=round(average, 1), measurements=len(self._samples))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "quality": self.quality.value,
            "average_latency": round(self.average_latency, 1),
            "measurements": len(self._samples),
        }

    def reset(self) -> None:
        self._samples.clear()
        self.quality = ConnectionQuality.GOOD


__all__ = [
    "ConnectionStatus",
    "ConnectionQuality",
    "ConnectionOptions",
    "TranscriptEvent",
    "QualityChange",
    "ConnectionQualityMonitor",
]
