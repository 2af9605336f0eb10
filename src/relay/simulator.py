"""
Local stand-in for Twilio: talk to the relay with a real microphone and speaker.

- Mic: 8kHz mono PCM16LE -> mu-law -> 20ms frames -> Twilio-style "media" events
- Playback: "media" events -> mu-law decode (with gain) -> speaker at 8kHz
- Announces a Twilio-style "start" (audio/pcmu, 8000Hz, 1 channel) on connect
  so the relay's state machine runs exactly as it would for a real call.

Playback is best-effort: frames are written as they arrive, with no 20ms
scheduling like Twilio does.

Usage:
  python scripts/mic_client.py
"""

from __future__ import annotations

import asyncio
import base64
import os
import random
import string
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import msgspec
import structlog
import websockets
from websockets.exceptions import ConnectionClosedError

from src.relay.codec import (
    FRAME_DURATION_MS,
    PCM_FRAME_SIZE,
    SAMPLE_RATE,
    ULAW_FRAME_SIZE,
    FrameBuffer,
    decode_frame,
    encode_frame,
    tone_pcm,
)
from src.relay.twilio_protocol import (
    create_media_message,
    create_start_message,
    encode_message,
)

logger = structlog.get_logger(__name__)

decoder = msgspec.json.Decoder()

DEFAULT_WS_URL = "ws://localhost:5050/media-stream"
DEFAULT_PLAYBACK_GAIN = 1.8
STATS_EVERY_FRAMES = 50


def generate_stream_sid(rng: Optional[random.Random] = None) -> str:
    rng = rng or random.Random()
    suffix = "".join(rng.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"LOCAL_MIC_{suffix}"


def _get_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@dataclass(frozen=True)
class SimulatorConfig:
    ws_url: str = DEFAULT_WS_URL
    playback_gain: float = DEFAULT_PLAYBACK_GAIN  # 1.0-3.0 typical
    mic_device: Optional[str] = None
    stream_sid: str = field(default_factory=generate_stream_sid)

    @classmethod
    def from_env(cls) -> "SimulatorConfig":
        return cls(
            ws_url=os.getenv("WS_URL", DEFAULT_WS_URL),
            playback_gain=_get_float("PLAYBACK_GAIN", DEFAULT_PLAYBACK_GAIN),
            mic_device=os.getenv("MIC_DEVICE") or None,
        )


def _device(name: Optional[str]) -> Optional[Any]:
    # sounddevice takes either a device index or a name substring.
    if name and name.isdigit():
        return int(name)
    return name


def build_start_message(stream_sid: str) -> str:
    return encode_message(create_start_message(stream_sid))


class MicFramer:
    """Turns raw mic PCM into 20ms mu-law media messages with running timestamps."""

    def __init__(self, stream_sid: str):
        self.stream_sid = stream_sid
        self.timestamp = 0
        self._buffer = FrameBuffer(PCM_FRAME_SIZE)

    def feed(self, pcm_chunk: bytes) -> List[str]:
        messages = []
        for pcm_frame in self._buffer.push(pcm_chunk):
            ulaw_frame = encode_frame(pcm_frame)
            payload = base64.b64encode(ulaw_frame).decode("utf-8")
            messages.append(
                encode_message(create_media_message(self.stream_sid, payload, timestamp=self.timestamp))
            )
            self.timestamp += FRAME_DURATION_MS
        return messages


class PlaybackSink:
    """
    Handles messages coming back from the relay.

    handle() returns PCM to play for media events; `stopped` flips when the
    relay asks the client to end the stream.
    """

    def __init__(self, playback_gain: float = DEFAULT_PLAYBACK_GAIN):
        self.playback_gain = playback_gain
        self.received_frames = 0
        self.stopped = False

    def handle(self, raw_message: Any) -> Optional[bytes]:
        try:
            data = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
        except msgspec.DecodeError:
            return None
        if not isinstance(data, dict):
            return None

        event = data.get("event")
        if event == "media":
            return self._handle_media(data)
        if event == "clear":
            # Twilio flushes its jitter buffer here; our playback just follows new frames.
            logger.info("Server requested clear")
        elif event == "stop":
            logger.info("Server requested stop")
            self.stopped = True
        return None

    def _handle_media(self, data: Dict[str, Any]) -> Optional[bytes]:
        media = data.get("media")
        if not isinstance(media, dict) or not media.get("payload"):
            return None
        try:
            ulaw = base64.b64decode(media["payload"])
        except (TypeError, ValueError):
            logger.warning("Dropping undecodable media payload")
            return None

        pcm = decode_frame(ulaw, self.playback_gain)

        # Chunks larger than one frame just mean the server is batching.
        previous = self.received_frames
        self.received_frames += -(-len(ulaw) // ULAW_FRAME_SIZE)
        if self.received_frames // STATS_EVERY_FRAMES > previous // STATS_EVERY_FRAMES:
            logger.info("Received mu-law frames", frames=self.received_frames, last_chunk_bytes=len(ulaw))
        return pcm


class LocalSimulator:
    """Fake Twilio client driving the relay from local audio devices."""

    def __init__(self, config: SimulatorConfig):
        self.config = config
        self.framer = MicFramer(config.stream_sid)
        self.sink = PlaybackSink(config.playback_gain)

    async def run(self) -> None:
        # Local import: needs PortAudio, only present where devices exist.
        import sounddevice as sd

        loop = asyncio.get_running_loop()
        mic_queue: asyncio.Queue[bytes] = asyncio.Queue()

        def on_mic(indata, frames, time_info, status) -> None:
            if status:
                logger.warning("Mic status", status=str(status))
            loop.call_soon_threadsafe(mic_queue.put_nowait, bytes(indata))

        speaker = sd.RawOutputStream(samplerate=SAMPLE_RATE, channels=1, dtype="int16")
        mic = sd.RawInputStream(
            samplerate=SAMPLE_RATE,
            channels=1,
            dtype="int16",
            blocksize=PCM_FRAME_SIZE // 2,
            device=_device(self.config.mic_device),
            callback=on_mic,
        )

        async with websockets.connect(self.config.ws_url) as ws:
            logger.info("WS connected", url=self.config.ws_url, stream_sid=self.config.stream_sid)
            await ws.send(build_start_message(self.config.stream_sid))

            speaker.start()
            # Startup beep so you know output is going to the right device.
            await asyncio.to_thread(speaker.write, tone_pcm(880, 200))

            mic.start()
            logger.info("Mic started @ 8kHz mono -> mu-law 20ms frames")

            sender = asyncio.create_task(self._send_mic(ws, mic_queue))
            try:
                await self._receive(ws, speaker)
            finally:
                sender.cancel()
                await asyncio.gather(sender, return_exceptions=True)
                mic.stop()
                mic.close()
                speaker.stop()
                speaker.close()

        logger.info("WS closed")

    async def _send_mic(self, ws: Any, mic_queue: "asyncio.Queue[bytes]") -> None:
        while True:
            chunk = await mic_queue.get()
            for message in self.framer.feed(chunk):
                await ws.send(message)

    async def _receive(self, ws: Any, speaker: Any) -> None:
        try:
            async for raw in ws:
                pcm = self.sink.handle(raw)
                if pcm:
                    await asyncio.to_thread(speaker.write, pcm)
                if self.sink.stopped:
                    await ws.close()
                    break
        except ConnectionClosedError as e:
            logger.warning("WS connection lost", error=str(e))
