"""
Tests for the HTTP endpoints and the media-stream WebSocket.
"""

import asyncio
import json
import os
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import WebSocketDisconnect


def make_client():
    from fastapi.testclient import TestClient
    from server.app import app

    return TestClient(app, raise_server_exceptions=False)


class TestTwimlGeneration:
    """Tests for the incoming-call webhook."""

    @pytest.mark.parametrize("method", ["get", "post"])
    def test_twiml_contains_stream_element(self, method):
        """Test that TwiML contains Stream element."""
        client = make_client()
        response = getattr(client, method)("/incoming-call")

        assert response.status_code == 200
        assert "application/xml" in response.headers.get("content-type", "")

        content = response.text
        assert "<Response>" in content
        assert '<Pause length="1"/>' in content
        assert "<Connect>" in content
        assert "<Stream" in content
        assert "wss://test.ngrok.io/media-stream" in content

    def test_twiml_is_valid_xml(self):
        """Test that TwiML is valid XML."""
        import xml.etree.ElementTree as ET

        response = make_client().post("/incoming-call")

        root = ET.fromstring(response.text)
        assert root.tag == "Response"
        assert [child.tag for child in root] == ["Pause", "Connect"]
        assert root.find("Connect/Stream").get("url") == "wss://test.ngrok.io/media-stream"

    def test_twiml_uses_correct_host(self):
        """Test that TwiML uses PUBLIC_HOST from config."""
        test_host = "my-custom-domain.example.com"

        with patch.dict(os.environ, {"PUBLIC_HOST": test_host}):
            from src.relay.config import get_config
            get_config.cache_clear()

            response = make_client().post("/incoming-call")

            assert f"wss://{test_host}/media-stream" in response.text

    def test_twiml_falls_back_to_request_host(self):
        with patch.dict(os.environ, {"PUBLIC_HOST": ""}):
            from src.relay.config import get_config
            get_config.cache_clear()

            response = make_client().post("/incoming-call", headers={"host": "relay.example.org"})

            assert "wss://relay.example.org/media-stream" in response.text


class TestStatusEndpoints:

    def test_root_message(self):
        response = make_client().get("/")

        assert response.status_code == 200
        assert response.json() == {"message": "Twilio Media Stream Server is running!"}

    def test_health_returns_ok(self):
        """Test health endpoint returns healthy status."""
        response = make_client().get("/health")

        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data

    def test_metrics_returns_json(self):
        """Test metrics endpoint returns JSON."""
        response = make_client().get("/metrics")

        assert response.status_code == 200

        data = response.json()
        assert "uptime_seconds" in data
        assert "total_calls" in data
        assert "active_calls" in data
        assert "hangups" in data
        assert "errors" in data


class FakeTwilioSocket:
    """Plays a fixed list of Twilio frames, then hangs up."""

    def __init__(self, frames):
        self._frames = list(frames)
        self.sent = []
        self.accepted = False
        self.closed = False

    async def accept(self):
        self.accepted = True

    async def receive_text(self):
        if not self._frames:
            raise WebSocketDisconnect(code=1000)
        return self._frames.pop(0)

    async def send_text(self, text):
        self.sent.append(text)

    async def close(self, code=1000, reason=None):
        self.closed = True


class TestMediaStream:

    @pytest.mark.asyncio
    async def test_call_without_model_ends_with_caller(self, monkeypatch):
        """The model being unreachable must not take the caller's socket down with it."""
        monkeypatch.setattr("src.relay.peers.websockets.connect", AsyncMock(side_effect=OSError("offline")))
        from server.app import media_stream, metrics

        calls_before = metrics.total_calls
        active_before = metrics.active_calls
        ws = FakeTwilioSocket([
            json.dumps({"event": "connected", "protocol": "Call"}),
            json.dumps({
                "event": "start",
                "start": {
                    "streamSid": "MZ123456",
                    "callSid": "CA789012",
                    "mediaFormat": {"encoding": "audio/x-mulaw", "sampleRate": 8000, "channels": 1},
                },
            }),
            json.dumps({"event": "media", "streamSid": "MZ123456", "media": {"payload": "//8="}}),
        ])

        await asyncio.wait_for(media_stream(ws), timeout=2.0)

        assert ws.accepted
        assert metrics.total_calls == calls_before + 1
        assert metrics.active_calls == active_before
