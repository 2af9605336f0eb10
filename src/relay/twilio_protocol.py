"""
Twilio Media Streams WebSocket protocol.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid, callSid and mediaFormat
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment
- clear: Clear buffered audio
- stop: Ask the client to end the stream (honoured by the local simulator)

Media payloads stay base64 strings end to end; the relay never decodes them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

import msgspec

from src.relay.errors import MalformedEventError

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()

HANGUP_MARK = "hangup_mark"
ULAW_ENCODINGS = ("audio/x-mulaw", "audio/pcmu")


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    CLEAR = "clear"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass(frozen=True)
class MediaFormat:
    encoding: str = "audio/x-mulaw"
    sample_rate: int = 8000
    channels: int = 1

    @property
    def is_ulaw_8k_mono(self) -> bool:
        return (
            self.encoding.lower() in ULAW_ENCODINGS
            and self.sample_rate == 8000
            and self.channels == 1
        )


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    media_format: MediaFormat = field(default_factory=MediaFormat)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = _section(message, "start")
        fmt = start.get("mediaFormat") or {}
        if not isinstance(fmt, dict):
            raise MalformedEventError("start.mediaFormat must be an object")
        try:
            media_format = MediaFormat(
                encoding=str(fmt.get("encoding", "audio/x-mulaw")),
                sample_rate=int(fmt.get("sampleRate", 8000)),
                channels=int(fmt.get("channels", 1)),
            )
        except (TypeError, ValueError) as e:
            raise MalformedEventError(f"Invalid mediaFormat: {e}")

        # The local simulator announces streamSid at top level and omits callSid.
        stream_sid = start.get("streamSid") or message.get("streamSid") or ""
        return cls(
            stream_sid=str(stream_sid),
            call_sid=str(start.get("callSid") or ""),
            media_format=media_format,
            custom_parameters=start.get("customParameters") or {},
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    payload: str  # base64 mu-law, forwarded as-is
    timestamp: Optional[int] = None
    track: str = "inbound"

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = _section(message, "media")
        payload = media.get("payload")
        if not isinstance(payload, str):
            raise MalformedEventError("media.payload must be a base64 string")

        timestamp = media.get("timestamp")
        if timestamp is not None:
            try:
                timestamp = int(timestamp)
            except (TypeError, ValueError):
                raise MalformedEventError(f"Invalid media.timestamp: {timestamp!r}")

        return cls(
            stream_sid=str(message.get("streamSid") or ""),
            payload=payload,
            timestamp=timestamp,
            track=str(media.get("track") or "inbound"),
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        """Parse from Twilio message."""
        mark = _section(message, "mark")
        name = mark.get("name")
        if not isinstance(name, str):
            raise MalformedEventError("mark.name must be a string")
        return cls(stream_sid=str(message.get("streamSid") or ""), name=name)


@dataclass
class TwilioStopEvent:
    """Parsed Twilio stop event."""
    stream_sid: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        return cls(stream_sid=str(message.get("streamSid") or ""))


TwilioEvent = Union[TwilioStartEvent, TwilioMediaEvent, TwilioMarkEvent, TwilioStopEvent, Dict[str, Any]]


def _section(message: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = message.get(key)
    if not isinstance(value, dict):
        raise MalformedEventError(f"'{key}' event is missing its '{key}' object")
    return value


def parse_twilio_message(raw_message: Union[str, bytes]) -> tuple[TwilioEventType, TwilioEvent]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        MalformedEventError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise MalformedEventError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise MalformedEventError("Twilio message must be a JSON object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise MalformedEventError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    elif event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    elif event_type == TwilioEventType.MARK:
        return event_type, TwilioMarkEvent.from_message(message)
    elif event_type == TwilioEventType.STOP:
        return event_type, TwilioStopEvent.from_message(message)
    else:
        return event_type, message


def encode_message(message: Dict[str, Any]) -> str:
    """Serialize an outbound message to JSON text."""
    return encoder.encode(message).decode("utf-8")


def create_start_message(
    stream_sid: str,
    call_sid: str = "",
    media_format: Optional[MediaFormat] = None,
) -> Dict[str, Any]:
    """
    Create a Twilio-style start message.

    Twilio only ever sends this; the local simulator uses it to announce itself.
    """
    media_format = media_format or MediaFormat(encoding="audio/pcmu")
    start: Dict[str, Any] = {
        "streamSid": stream_sid,
        "mediaFormat": {
            "encoding": media_format.encoding,
            "sampleRate": media_format.sample_rate,
            "channels": media_format.channels,
        },
    }
    if call_sid:
        start["callSid"] = call_sid
    return {"event": "start", "streamSid": stream_sid, "start": start}


def create_media_message(
    stream_sid: str,
    payload_b64: str,
    timestamp: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        payload_b64: Base64 mu-law audio
        timestamp: Optional media timestamp in ms

    Returns:
        Message dict to send to Twilio
    """
    media: Dict[str, Any] = {"payload": payload_b64}
    if timestamp is not None:
        media["timestamp"] = timestamp
    return {"event": "media", "streamSid": stream_sid, "media": media}


def create_mark_message(stream_sid: str, name: str) -> Dict[str, Any]:
    """
    Create a Twilio mark message.

    Twilio echoes the mark back once all audio queued before it has played.
    """
    return {"event": "mark", "streamSid": stream_sid, "mark": {"name": name}}


def create_clear_message(stream_sid: str) -> Dict[str, Any]:
    """Create a Twilio clear message to flush buffered audio."""
    return {"event": "clear", "streamSid": stream_sid}


def create_stop_message(stream_sid: str) -> Dict[str, Any]:
    return {"event": "stop", "streamSid": stream_sid}
