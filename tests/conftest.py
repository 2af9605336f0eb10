"""
Pytest configuration and fixtures.
"""

import pytest
import os
from typing import List
from unittest.mock import patch

from src.relay.errors import PeerUnavailableError
from src.relay.peers import PeerConnection, PeerEventKind, PeerSide


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "5050",
        "LOG_LEVEL": "DEBUG",
        "OPENAI_API_KEY": "test_openai_key",
        "TWILIO_ACCOUNT_SID": "ACtest123456789",
        "TWILIO_AUTH_TOKEN": "test_auth_token",
        "SESSION_SETTLE_DELAY_MS": "0",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.relay.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakePeer(PeerConnection):
    """In-memory peer that records what the session sends."""

    def __init__(self, side: PeerSide, *, open_on_start: bool = True):
        super().__init__()
        self.side = side
        self.sent: List[dict] = []
        self.closed = False
        self._open_on_start = open_on_start

    async def open(self) -> bool:
        if not self._open_on_start:
            return False
        self._open = True
        self._emit(PeerEventKind.OPENED)
        return True

    async def send(self, event: dict) -> None:
        if not self._open:
            raise PeerUnavailableError(f"{self.side.value} peer is not open")
        self.sent.append(event)

    async def _write(self, event: dict) -> None:
        self.sent.append(event)

    async def _close_transport(self) -> None:
        self.closed = True

    def emit(self, kind: PeerEventKind, message=None, error=None) -> None:
        """Simulate an event arriving from the remote end."""
        if kind == PeerEventKind.CLOSED:
            self._mark_remote_closed()
            return
        self._emit(kind, message=message, error=error)

    def events(self, name: str) -> List[dict]:
        return [e for e in self.sent if e.get("event") == name or e.get("type") == name]


@pytest.fixture
def telephony_peer():
    peer = FakePeer(PeerSide.TELEPHONY)
    peer._open = True
    return peer


@pytest.fixture
def model_peer():
    peer = FakePeer(PeerSide.MODEL)
    peer._open = True
    return peer


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def sample_pcm_audio():
    """Generate sample PCM audio (silence)."""
    return b"\x00\x00" * 160  # 20ms of silence at 8kHz


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    import json
    return json.dumps({
        "event": "start",
        "streamSid": "MZ123456",
        "start": {
            "streamSid": "MZ123456",
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    import json
    import base64

    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": "1",
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    import json
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })


@pytest.fixture
def peer_factory():
    """Build unopened fake peers; run() opens them."""
    return FakePeer
