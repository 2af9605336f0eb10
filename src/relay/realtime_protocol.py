"""
OpenAI Realtime API event shapes used by the relay.

Outbound: session.update, conversation.item.create, response.create,
input_audio_buffer.append.

Inbound events the relay reacts to: response.output_audio.delta,
input_audio_buffer.speech_started, response.done, session.updated, error.
Anything else is parsed and passed through as an OTHER event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

import msgspec

from src.relay.errors import MalformedEventError

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

ULAW_FORMAT = "audio/pcmu"

# Inbound events worth an info-level log line.
LOG_EVENT_TYPES = frozenset(
    {
        "error",
        "response.done",
        "session.updated",
        "input_audio_buffer.speech_started",
    }
)


class RealtimeEventType(str, Enum):
    ERROR = "error"
    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    SPEECH_STARTED = "input_audio_buffer.speech_started"
    SPEECH_STOPPED = "input_audio_buffer.speech_stopped"
    AUDIO_DELTA = "response.output_audio.delta"
    RESPONSE_DONE = "response.done"
    OTHER = "other"


# Older API revisions name the audio delta differently.
_TYPE_ALIASES = {
    "response.audio.delta": RealtimeEventType.AUDIO_DELTA,
}


@dataclass
class RealtimeEvent:
    """Parsed inbound Realtime event."""
    type: RealtimeEventType
    raw_type: str
    delta: Optional[str] = None
    response_status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.type == RealtimeEventType.ERROR


def parse_realtime_event(raw_message: Union[str, bytes]) -> RealtimeEvent:
    """
    Parse one inbound Realtime message.

    Raises:
        MalformedEventError: On invalid JSON, a missing type, or a known event
            whose payload has the wrong shape
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise MalformedEventError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise MalformedEventError("Realtime message must be a JSON object")

    raw_type = message.get("type")
    if not isinstance(raw_type, str) or not raw_type:
        raise MalformedEventError("Realtime message has no 'type'")

    event_type = _TYPE_ALIASES.get(raw_type)
    if event_type is None:
        try:
            event_type = RealtimeEventType(raw_type)
        except ValueError:
            event_type = RealtimeEventType.OTHER

    event = RealtimeEvent(type=event_type, raw_type=raw_type, raw=message)

    if event_type == RealtimeEventType.AUDIO_DELTA:
        delta = message.get("delta")
        if delta is not None and not isinstance(delta, str):
            raise MalformedEventError("Audio delta must be a base64 string")
        event.delta = delta or None

    elif event_type == RealtimeEventType.RESPONSE_DONE:
        response = message.get("response")
        if not isinstance(response, dict):
            raise MalformedEventError("response.done is missing its 'response' object")
        status = response.get("status")
        event.response_status = status if isinstance(status, str) else None

    return event


def encode_event(event: Dict[str, Any]) -> str:
    return encoder.encode(event).decode("utf-8")


def create_session_update(
    *,
    model: str,
    voice: str,
    instructions: str,
) -> Dict[str, Any]:
    """Build the session.update that pins mu-law in/out and server VAD."""
    return {
        "type": "session.update",
        "session": {
            "type": "realtime",
            "model": model,
            "output_modalities": ["audio"],
            "audio": {
                "input": {
                    "format": {"type": ULAW_FORMAT},
                    "turn_detection": {"type": "server_vad"},
                },
                "output": {
                    "format": {"type": ULAW_FORMAT},
                    "voice": voice,
                },
            },
            "instructions": instructions,
        },
    }


def create_user_message(text: str) -> Dict[str, Any]:
    """Build a conversation.item.create carrying a user text turn."""
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "message",
            "role": "user",
            "content": [{"type": "input_text", "text": text}],
        },
    }


def create_response_request() -> Dict[str, Any]:
    return {"type": "response.create"}


def create_audio_append(payload_b64: str) -> Dict[str, Any]:
    return {"type": "input_audio_buffer.append", "audio": payload_b64}
