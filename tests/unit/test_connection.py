"""Unit tests for the Deepgram connection and quality monitor."""

import asyncio

import pytest

from classpartner_core.errors import ConfigurationError, ConnectionTimeoutError, ProviderConnectionError
from classpartner_core.transcription import (
    ConnectionOptions,
    ConnectionQuality,
    ConnectionQualityMonitor,
    ConnectionStatus,
    DeepgramConnection,
    TranscriptEvent,
)
from tests.conftest import FakeConnector, eventually, results_message, settle


def make_connection(connector, **kwargs) -> DeepgramConnection:
    params = dict(
        api_key="dg_test_key",
        connector=connector,
        base_delay=0.0,
        keepalive_interval=0,
    )
    params.update(kwargs)
    return DeepgramConnection(**params)


class TestConnectionQualityMonitor:
    """Tests for latency-based quality classification."""

    def test_starts_good(self):
        monitor = ConnectionQualityMonitor()
        assert monitor.quality == ConnectionQuality.GOOD
        assert monitor.snapshot() == {"quality": "good", "average_latency": 0.0, "measurements": 0}

    def test_no_event_while_label_unchanged(self):
        monitor = ConnectionQualityMonitor()
        assert monitor.record(50) is None
        assert monitor.record(150) is None

    def test_one_event_per_transition(self):
        """Latency rising from good through fair to poor emits each transition once."""
        monitor = ConnectionQualityMonitor(window=3)
        changes = [monitor.record(latency) for latency in (300, 300, 300, 900, 900, 900)]
        emitted = [change for change in changes if change is not None]

        assert [change.quality for change in emitted] == [
            ConnectionQuality.FAIR,
            ConnectionQuality.POOR,
        ]
        assert emitted[0].measurements == 1

    def test_rolling_window(self):
        monitor = ConnectionQualityMonitor(window=2)
        monitor.record(1000)
        monitor.record(1000)
        assert monitor.quality == ConnectionQuality.POOR

        monitor.record(10)
        change = monitor.record(10)
        assert change is not None
        assert change.quality == ConnectionQuality.GOOD
        assert monitor.measurements == 2

    def test_reset(self):
        monitor = ConnectionQualityMonitor()
        monitor.record(2000)
        monitor.reset()
        assert monitor.quality == ConnectionQuality.GOOD
        assert monitor.measurements == 0


class TestConnectionOptions:
    """Tests for live query parameters."""

    def test_query_lowercases_booleans(self):
        query = ConnectionOptions().to_query()
        assert query["model"] == "nova-2"
        assert query["smart_format"] == "true"
        assert query["interim_results"] == "true"
        assert query["endpointing"] == "150"
        assert query["sample_rate"] == "16000"
        assert query["encoding"] == "linear16"


class TestReconnectBackoff:
    """Tests for the reconnection schedule."""

    def test_exponential_delays(self):
        connection = DeepgramConnection(api_key="k", base_delay=1.0)
        assert [connection.reconnect_delay(n) for n in range(5)] == [1, 2, 4, 8, 16]

    def test_custom_base(self):
        connection = DeepgramConnection(api_key="k", base_delay=0.5)
        assert connection.reconnect_delay(3) == 4.0


class TestDeepgramConnection:
    """Tests for the connection lifecycle."""

    @pytest.mark.asyncio
    async def test_connect_requires_api_key(self, connector):
        connection = make_connection(connector, api_key="")
        with pytest.raises(ConfigurationError):
            await connection.connect()
        assert connector.calls == []

    @pytest.mark.asyncio
    async def test_connect_success(self, connector):
        connection = make_connection(connector)
        statuses = []
        connection.events.on("status", lambda payload: statuses.append(payload["status"]))

        await connection.connect()

        assert statuses == ["connecting", "connected"]
        assert connection.get_connection_status() == "connected"
        assert connection.stream_started_at_ms is not None
        call = connector.calls[0]
        assert call["headers"]["Authorization"] == "Token dg_test_key"
        assert "model=nova-2" in call["url"]
        assert "interim_results=true" in call["url"]

        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        async def slow_connector(url, headers):
            await asyncio.sleep(1)

        connection = make_connection(slow_connector, connect_timeout=0.01)
        errors = []
        connection.events.on("error", errors.append)

        with pytest.raises(ConnectionTimeoutError):
            await connection.connect()

        assert connection.status == ConnectionStatus.ERROR
        assert errors and errors[0]["code"] == "CONNECTION_TIMEOUT"

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        connector = FakeConnector(failures=[OSError("handshake refused")])
        connection = make_connection(connector)

        with pytest.raises(ProviderConnectionError):
            await connection.connect()
        assert connection.status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_send_audio_when_disconnected(self, connector):
        connection = make_connection(connector)
        assert await connection.send_audio(b"\x00\x01") is False

    @pytest.mark.asyncio
    async def test_send_audio(self, connector):
        connection = make_connection(connector)
        await connection.connect()

        assert await connection.send_audio(b"\x00\x01") is True
        assert connector.latest.sent == [b"\x00\x01"]

        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_transcript_events(self, connector):
        connection = make_connection(connector)
        events = []
        connection.events.on("transcript", events.append)
        await connection.connect()

        connector.latest.push(results_message("hello class", is_final=False, start=0.0, end=0.8))
        connector.latest.push(results_message("hello class today", start=1.5, end=2.5))
        await eventually(lambda: len(events) == 2)

        interim, final = events
        assert isinstance(final, TranscriptEvent)
        assert interim.is_final is False
        assert final.is_final is True
        assert final.text == "hello class today"
        assert final.start_ms == 1500
        assert final.end_ms == 2500
        assert final.confidence == 0.95

        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_empty_transcript_ignored(self, connector):
        connection = make_connection(connector)
        events = []
        connection.events.on("transcript", events.append)
        await connection.connect()

        connector.latest.push(results_message(""))
        connector.latest.push({"type": "SpeechStarted", "timestamp": 0.4})
        await settle(10)

        assert events == []
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_latency_updates_quality(self, connector):
        now = [100.0]
        connection = make_connection(connector, clock=lambda: now[0], quality_window=1)
        changes = []
        connection.events.on("quality-change", changes.append)
        await connection.connect()

        await connection.send_audio(b"\x00")
        now[0] += 0.8
        connector.latest.push(results_message("slow words"))
        await eventually(lambda: len(changes) == 1)

        assert changes[0]["quality"] == "poor"
        assert connection.get_connection_quality()["quality"] == "poor"
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, connector):
        connection = make_connection(connector)
        await connection.connect()
        ws = connector.latest

        await connection.disconnect()
        await connection.disconnect()

        assert {"type": "CloseStream"} in ws.sent_json()
        assert ws.closed is True
        assert connection.status == ConnectionStatus.DISCONNECTED
        assert len(connector.calls) == 1

    @pytest.mark.asyncio
    async def test_normal_close_does_not_reconnect(self, connector):
        connection = make_connection(connector)
        await connection.connect()

        connector.latest.end(1000)
        await eventually(lambda: connection.status == ConnectionStatus.DISCONNECTED)
        await settle(10)

        assert len(connector.calls) == 1

    @pytest.mark.asyncio
    async def test_abnormal_close_reconnects(self, connector):
        connection = make_connection(connector)
        statuses = []
        connection.events.on("status", lambda payload: statuses.append(payload["status"]))
        await connection.connect()

        connector.latest.end(1011)
        await eventually(lambda: len(connector.sockets) == 2 and connection.is_connected)

        assert "reconnecting" in statuses
        assert connection.reconnect_attempts == 0
        await connection.disconnect()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        connector = FakeConnector()
        connection = make_connection(connector, max_attempts=2)
        exhausted = []
        connection.events.on("max-reconnects-reached", exhausted.append)
        await connection.connect()

        connector.failures = [OSError("down"), OSError("still down")]
        connector.latest.end(1006)
        await eventually(lambda: len(exhausted) == 1)

        assert exhausted[0]["attempts"] == 2
        assert len(connector.calls) == 3
        assert connection.status == ConnectionStatus.ERROR

        await settle(10)
        assert len(connector.calls) == 3
        await connection.disconnect()
