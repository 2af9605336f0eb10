"""
Tests for the local microphone/speaker client.
"""

import base64
import json
import os
import random
import struct
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.relay.simulator import (
    LocalSimulator,
    MicFramer,
    PlaybackSink,
    SimulatorConfig,
    build_start_message,
    generate_stream_sid,
)
from src.relay.twilio_protocol import (
    TwilioEventType,
    create_clear_message,
    encode_message,
    parse_twilio_message,
)


class TestStartMessage:

    def test_stream_sid_format(self):
        sid = generate_stream_sid(random.Random(1))

        assert sid.startswith("LOCAL_MIC_")
        assert len(sid) == len("LOCAL_MIC_") + 6
        assert sid[len("LOCAL_MIC_"):].isalnum()

    def test_start_message_announces_ulaw(self):
        message = json.loads(build_start_message("LOCAL_MIC_ABC123"))

        assert message["event"] == "start"
        assert message["streamSid"] == "LOCAL_MIC_ABC123"
        assert message["start"]["mediaFormat"] == {"encoding": "audio/pcmu", "sampleRate": 8000, "channels": 1}

    def test_relay_accepts_start_message(self):
        event_type, event = parse_twilio_message(build_start_message("LOCAL_MIC_ABC123"))

        assert event_type == TwilioEventType.START
        assert event.stream_sid == "LOCAL_MIC_ABC123"
        assert event.media_format.is_ulaw_8k_mono


class TestSimulatorConfig:

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = SimulatorConfig.from_env()

        assert config.ws_url == "ws://localhost:5050/media-stream"
        assert config.playback_gain == 1.8
        assert config.mic_device is None
        assert config.stream_sid.startswith("LOCAL_MIC_")

    def test_from_env(self):
        env = {"WS_URL": "ws://relay:9000/media-stream", "PLAYBACK_GAIN": "2.5", "MIC_DEVICE": "USB"}
        with patch.dict(os.environ, env):
            config = SimulatorConfig.from_env()

        assert config.ws_url == "ws://relay:9000/media-stream"
        assert config.playback_gain == 2.5
        assert config.mic_device == "USB"

    def test_bad_gain_falls_back(self):
        with patch.dict(os.environ, {"PLAYBACK_GAIN": "loud"}):
            assert SimulatorConfig.from_env().playback_gain == 1.8


class TestMicFramer:

    def test_frames_are_20ms_with_running_timestamps(self):
        framer = MicFramer("LOCAL_MIC_ABC123")

        first = framer.feed(b"\x00\x00" * 240)
        second = framer.feed(b"\x00\x00" * 80)

        messages = [json.loads(m) for m in first + second]
        assert [m["media"]["timestamp"] for m in messages] == [0, 20]
        for message in messages:
            assert message["event"] == "media"
            assert message["streamSid"] == "LOCAL_MIC_ABC123"
            assert base64.b64decode(message["media"]["payload"]) == b"\xff" * 160

    def test_partial_chunk_produces_nothing(self):
        framer = MicFramer("LOCAL_MIC_ABC123")

        assert framer.feed(b"\x00\x00" * 100) == []
        assert framer.timestamp == 0

    def test_relay_parses_mic_frames(self):
        framer = MicFramer("LOCAL_MIC_ABC123")
        pcm = struct.pack("<160h", *([1000] * 160))

        (raw,) = framer.feed(pcm)
        event_type, event = parse_twilio_message(raw)

        assert event_type == TwilioEventType.MEDIA
        assert base64.b64decode(event.payload) == b"\xce" * 160


def media(payload: bytes) -> str:
    return json.dumps({
        "event": "media",
        "streamSid": "LOCAL_MIC_ABC123",
        "media": {"payload": base64.b64encode(payload).decode()},
    })


class TestPlaybackSink:

    def test_media_is_decoded_with_gain(self):
        sink = PlaybackSink(playback_gain=2.0)

        pcm = sink.handle(media(b"\xce\xff"))

        assert struct.unpack("<2h", pcm) == (1976, 0)

    def test_frames_are_counted_per_160_bytes(self):
        sink = PlaybackSink()

        sink.handle(media(b"\xff" * 160))
        sink.handle(media(b"\xff" * 480))
        sink.handle(media(b"\xff" * 10))

        assert sink.received_frames == 5

    def test_clear_is_ignored(self):
        sink = PlaybackSink()

        assert sink.handle(encode_message(create_clear_message("LOCAL_MIC_ABC123"))) is None
        assert sink.stopped is False

    def test_mark_is_ignored(self):
        sink = PlaybackSink()
        message = json.dumps({"event": "mark", "streamSid": "LOCAL_MIC_ABC123", "mark": {"name": "hangup_mark"}})

        assert sink.handle(message) is None

    def test_stop_flags_stopped(self):
        sink = PlaybackSink()

        sink.handle(json.dumps({"event": "stop", "streamSid": "LOCAL_MIC_ABC123"}))

        assert sink.stopped is True

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[1, 2]",
            json.dumps({"event": "media", "media": {}}),
            json.dumps({"event": "media", "media": {"payload": "abc"}}),
        ],
    )
    def test_garbage_is_ignored(self, raw):
        assert PlaybackSink().handle(raw) is None

    def test_bytes_input(self):
        assert PlaybackSink().handle(media(b"\xff").encode()) == b"\x00\x00"


class FakeServerSocket:

    def __init__(self, messages):
        self._messages = list(messages)
        self.close = AsyncMock()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)


class TestLocalSimulator:

    @pytest.mark.asyncio
    async def test_receive_plays_audio_until_stop(self):
        simulator = LocalSimulator(SimulatorConfig(stream_sid="LOCAL_MIC_ABC123"))
        speaker = MagicMock()
        ws = FakeServerSocket([
            media(b"\xff" * 160),
            json.dumps({"event": "stop", "streamSid": "LOCAL_MIC_ABC123"}),
            media(b"\xff" * 160),
        ])

        await simulator._receive(ws, speaker)

        speaker.write.assert_called_once_with(b"\x00\x00" * 160)
        ws.close.assert_awaited_once()
