"""
Peer connections for the relay.

Both sides of a call (the Twilio media stream and the OpenAI Realtime socket)
are wrapped in the same small interface so the call session never touches a
transport directly:

- send(event): queue an outbound message dict (never blocks on the transport)
- on_event(handler): receive PeerEvents (opened / message / closed / failed)
- close(): tear the connection down
- is_open: whether sends are currently accepted

Each peer drains its own bounded send queue from a writer task, so slow
delivery on one side cannot stall processing of the other side's events.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union

import structlog
import websockets
from websockets.exceptions import ConnectionClosedError, WebSocketException

from src.relay.config import Config
from src.relay.errors import MalformedEventError, PeerUnavailableError
from src.relay.realtime_protocol import encode_event, parse_realtime_event
from src.relay.twilio_protocol import TwilioEventType, encode_message, parse_twilio_message

logger = structlog.get_logger(__name__)

_CLOSE_DRAIN_TIMEOUT_S = 1.0


class PeerSide(str, Enum):
    TELEPHONY = "telephony"
    MODEL = "model"


class PeerEventKind(str, Enum):
    OPENED = "opened"
    MESSAGE = "message"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass(frozen=True)
class PeerEvent:
    """One notification from a peer, delivered to the session inbox."""
    side: PeerSide
    kind: PeerEventKind
    message: Any = None
    error: Optional[str] = None


EventHandler = Callable[[PeerEvent], None]


def _describe(event: dict) -> str:
    return str(event.get("type") or event.get("event") or "unknown")


class PeerConnection(ABC):
    """Uniform send/receive interface over one duplex message channel."""

    side: PeerSide

    def __init__(self, *, queue_size: int = 2000):
        self._handler: Optional[EventHandler] = None
        self._pending: List[PeerEvent] = []
        self._open = False
        self._closed = False
        self._shut_down = False
        self._send_queue: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=queue_size)
        self._writer_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self._open

    def on_event(self, handler: EventHandler) -> None:
        """Register the event handler; events emitted earlier are replayed to it."""
        self._handler = handler
        pending, self._pending = self._pending, []
        for event in pending:
            handler(event)

    async def send(self, event: dict) -> None:
        """
        Queue an outbound message.

        Raises:
            PeerUnavailableError: If the peer is not open
        """
        if not self._open:
            raise PeerUnavailableError(f"{self.side.value} peer is not open")

        try:
            self._send_queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Peer send queue full; dropping event", side=self.side.value, type=_describe(event))

    async def close(self) -> None:
        """Stop accepting sends, flush what is queued, and close the transport."""
        if self._shut_down:
            return
        self._shut_down = True
        remote_gone = self._closed
        self._closed = True
        self._open = False

        task = self._writer_task
        if task and not task.done():
            if remote_gone:
                task.cancel()
            else:
                try:
                    self._send_queue.put_nowait(None)
                except asyncio.QueueFull:
                    task.cancel()
            done, _ = await asyncio.wait({task}, timeout=_CLOSE_DRAIN_TIMEOUT_S)
            if not done:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        await self._close_transport()
        logger.debug("Peer closed", side=self.side.value)

    def _emit(self, kind: PeerEventKind, message: Any = None, error: Optional[str] = None) -> None:
        event = PeerEvent(side=self.side, kind=kind, message=message, error=error)
        if self._handler is None:
            self._pending.append(event)
        else:
            self._handler(event)

    def _mark_remote_closed(self) -> None:
        """The other end went away; report it once."""
        if self._closed:
            return
        self._closed = True
        self._open = False
        self._emit(PeerEventKind.CLOSED)

    def _start_writer(self) -> None:
        if self._writer_task is None or self._writer_task.done():
            self._writer_task = asyncio.create_task(self._writer_loop())

    async def _writer_loop(self) -> None:
        try:
            while True:
                item = await self._send_queue.get()
                if item is None:
                    break
                try:
                    await self._write(item)
                except Exception as e:
                    logger.error("Peer send failed", side=self.side.value, type=_describe(item), error=str(e))
                    self._mark_remote_closed()
                    break
        except asyncio.CancelledError:
            pass

    @abstractmethod
    async def open(self) -> bool:
        """Bring the connection up and emit OPENED (or FAILED)."""

    @abstractmethod
    async def _write(self, event: dict) -> None:
        ...

    @abstractmethod
    async def _close_transport(self) -> None:
        ...


class TelephonyPeer(PeerConnection):
    """
    Twilio side of a call.

    The transport (an accepted WebSocket) stays with the caller: it pushes each
    received text frame into feed() and calls notify_closed() on disconnect.
    """

    side = PeerSide.TELEPHONY

    def __init__(
        self,
        send_text: Callable[[str], Awaitable[None]],
        close_transport: Optional[Callable[[], Awaitable[None]]] = None,
        *,
        queue_size: int = 2000,
    ):
        super().__init__(queue_size=queue_size)
        self._send_text = send_text
        self._close_transport_cb = close_transport

    async def open(self) -> bool:
        self._open = True
        self._start_writer()
        self._emit(PeerEventKind.OPENED)
        return True

    def feed(self, raw_message: Union[str, bytes]) -> None:
        """Parse one inbound frame and deliver it; malformed frames are dropped."""
        try:
            event_type, event = parse_twilio_message(raw_message)
        except MalformedEventError as e:
            logger.warning("Dropping malformed Twilio message", error=str(e))
            return

        if event_type in (TwilioEventType.CONNECTED, TwilioEventType.DTMF, TwilioEventType.CLEAR):
            logger.debug("Ignoring Twilio event", event_type=event_type.value)
            return

        self._emit(PeerEventKind.MESSAGE, message=event)

    def notify_closed(self) -> None:
        self._mark_remote_closed()

    async def _write(self, event: dict) -> None:
        await self._send_text(encode_message(event))

    async def _close_transport(self) -> None:
        if not self._close_transport_cb:
            return
        try:
            await self._close_transport_cb()
        except Exception as e:
            # Socket already gone on the Twilio side.
            logger.debug("Telephony transport close failed", error=str(e))


class ModelPeer(PeerConnection):
    """OpenAI Realtime side of a call."""

    side = PeerSide.MODEL

    def __init__(self, config: Config, *, connect: Optional[Callable[..., Awaitable[Any]]] = None):
        super().__init__(queue_size=config.peer_send_queue_size)
        self.config = config
        self._connect = connect or websockets.connect
        self._ws: Optional[Any] = None
        self._reader_task: Optional[asyncio.Task] = None

    async def open(self) -> bool:
        """
        Dial the Realtime endpoint.

        Connection problems are reported as a FAILED event, never raised.
        """
        headers = {"Authorization": f"Bearer {self.config.openai_api_key}"}
        try:
            self._ws = await self._connect(
                self.config.realtime_url,
                additional_headers=headers,
                open_timeout=10,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error("OpenAI Realtime connection failed", error=str(e))
            self._emit(PeerEventKind.FAILED, error=str(e))
            return False

        if self._shut_down:
            # Session ended while we were dialing.
            await self._ws.close()
            return False

        self._open = True
        self._start_writer()
        self._reader_task = asyncio.create_task(self._receive_loop())

        logger.info("Connected to the OpenAI Realtime API", model=self.config.openai_realtime_model)
        self._emit(PeerEventKind.OPENED)
        return True

    async def _receive_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                try:
                    event = parse_realtime_event(raw)
                except MalformedEventError as e:
                    logger.warning("Dropping malformed OpenAI message", error=str(e))
                    continue
                self._emit(PeerEventKind.MESSAGE, message=event)
        except asyncio.CancelledError:
            return
        except ConnectionClosedError as e:
            logger.warning("OpenAI Realtime connection lost", error=str(e))

        logger.info("Disconnected from the OpenAI Realtime API")
        self._mark_remote_closed()

    async def _write(self, event: dict) -> None:
        await self._ws.send(encode_event(event))

    async def _close_transport(self) -> None:
        task = self._reader_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._ws is not None:
            try:
                await self._ws.close()
            except WebSocketException as e:
                logger.debug("OpenAI socket close failed", error=str(e))
