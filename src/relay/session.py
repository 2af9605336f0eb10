"""
Per-call relay between a Twilio media stream and an OpenAI Realtime session.

Audio is forwarded as-is in both directions (both ends speak 8kHz mono
mu-law). On top of the relay the session runs a small lifecycle:

    IDLE -> AWAITING_MODEL_READY -> ACTIVE -> AWAITING_HANGUP_ACK -> CLOSED

Hangup rule: once the caller has been heard (speech_started) and the model
then completes a response, a `hangup_mark` mark is queued behind the
assistant's audio. When Twilio echoes that mark back, the goodbye has played
and the call is terminated.

Both peers deliver their events into a single inbox consumed by run(), so
every field below is only touched from that one task.
"""

from __future__ import annotations

import asyncio
import random
import time
from enum import Enum
from typing import Dict, FrozenSet, Optional

import structlog

from src.relay.config import Config
from src.relay.errors import PeerUnavailableError
from src.relay.initializer import SessionInitializer, UtteranceContext
from src.relay.peers import ModelPeer, PeerConnection, PeerEvent, PeerEventKind, PeerSide
from src.relay.realtime_protocol import (
    LOG_EVENT_TYPES,
    RealtimeEvent,
    RealtimeEventType,
    create_audio_append,
)
from src.relay.terminator import CallTerminator
from src.relay.twilio_protocol import (
    HANGUP_MARK,
    TwilioMarkEvent,
    TwilioMediaEvent,
    TwilioStartEvent,
    TwilioStopEvent,
    create_mark_message,
    create_media_message,
)

logger = structlog.get_logger(__name__)


class CallState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL_READY = "awaiting_model_ready"
    ACTIVE = "active"
    AWAITING_HANGUP_ACK = "awaiting_hangup_ack"
    CLOSED = "closed"

    def can_transition(self, target: "CallState") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: Dict[CallState, FrozenSet[CallState]] = {
    CallState.IDLE: frozenset({CallState.AWAITING_MODEL_READY, CallState.CLOSED}),
    CallState.AWAITING_MODEL_READY: frozenset({CallState.ACTIVE, CallState.CLOSED}),
    CallState.ACTIVE: frozenset({CallState.AWAITING_HANGUP_ACK, CallState.CLOSED}),
    # A restarted stream drops back to ACTIVE.
    CallState.AWAITING_HANGUP_ACK: frozenset({CallState.ACTIVE, CallState.CLOSED}),
    CallState.CLOSED: frozenset(),
}


class CallSession:
    """
    One call: a telephony peer, a model peer, and the state machine between them.

    Use create_call_session() to build one; run() drives it until either side
    goes away.
    """

    def __init__(
        self,
        config: Config,
        telephony: PeerConnection,
        model: PeerConnection,
        terminator: CallTerminator,
        context: UtteranceContext,
        *,
        initializer: Optional[SessionInitializer] = None,
    ):
        self.config = config
        self.telephony = telephony
        self.model = model
        self.terminator = terminator
        self.context = context
        self.initializer = initializer or SessionInitializer(config)

        self.stream_sid: str = ""
        self.call_sid: str = ""
        self.speech_started: bool = False
        self.created_at: float = time.time()

        self._state = CallState.IDLE
        self._hangup_requested = False
        self._inbox: asyncio.Queue[PeerEvent] = asyncio.Queue()
        self._init_task: Optional[asyncio.Task] = None
        self._model_open_task: Optional[asyncio.Task] = None

        telephony.on_event(self._inbox.put_nowait)
        model.on_event(self._inbox.put_nowait)

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def hangup_mark_sent(self) -> bool:
        return self._state == CallState.AWAITING_HANGUP_ACK or self._hangup_requested

    @property
    def is_closed(self) -> bool:
        return self._state == CallState.CLOSED

    def _transition(self, target: CallState) -> bool:
        if not self._state.can_transition(target):
            logger.debug("Ignoring invalid transition", state=self._state.value, target=target.value)
            return False
        logger.debug("Call state changed", previous=self._state.value, state=target.value, call_sid=self.call_sid or None)
        self._state = target
        return True

    async def run(self) -> None:
        """Open both peers and process events until the session closes."""
        logger.info(
            "New call initiated",
            prompt_profile=self.context.prompt_profile,
            reference_id=self.context.reference_id,
        )
        try:
            await self.telephony.open()
            self._model_open_task = asyncio.create_task(self.model.open())
            while not self.is_closed:
                event = await self._inbox.get()
                await self.handle_event(event)
        finally:
            self._state = CallState.CLOSED
            await self._teardown()

    async def handle_event(self, event: PeerEvent) -> None:
        """Apply one peer event to the session."""
        if self.is_closed:
            return

        if event.side == PeerSide.TELEPHONY:
            await self._handle_telephony_event(event)
        else:
            await self._handle_model_event(event)

    # --- telephony side -------------------------------------------------

    async def _handle_telephony_event(self, event: PeerEvent) -> None:
        if event.kind == PeerEventKind.CLOSED:
            logger.info("Client disconnected", call_sid=self.call_sid or None)
            self._transition(CallState.CLOSED)
            return

        if event.kind != PeerEventKind.MESSAGE:
            return

        message = event.message
        if isinstance(message, TwilioMediaEvent):
            await self._forward_caller_audio(message)
        elif isinstance(message, TwilioStartEvent):
            self._handle_start(message)
        elif isinstance(message, TwilioMarkEvent):
            await self._handle_mark(message)
        elif isinstance(message, TwilioStopEvent):
            logger.info("Incoming stream stopped", stream_sid=message.stream_sid, call_sid=self.call_sid or None)
            self._transition(CallState.CLOSED)

    def _handle_start(self, event: TwilioStartEvent) -> None:
        self.stream_sid = event.stream_sid
        self.call_sid = event.call_sid
        self.speech_started = False
        self._hangup_requested = False
        if self._state == CallState.AWAITING_HANGUP_ACK:
            self._transition(CallState.ACTIVE)

        if not event.media_format.is_ulaw_8k_mono:
            logger.warning(
                "Unexpected media format; forwarding anyway",
                encoding=event.media_format.encoding,
                sample_rate=event.media_format.sample_rate,
                channels=event.media_format.channels,
            )

        logger.info("Incoming stream has started", stream_sid=self.stream_sid, call_sid=self.call_sid or None)

    async def _forward_caller_audio(self, event: TwilioMediaEvent) -> None:
        if not self.stream_sid or not self.model.is_open:
            return
        try:
            await self.model.send(create_audio_append(event.payload))
        except PeerUnavailableError as e:
            logger.debug("Dropping caller audio", error=str(e))

    async def _handle_mark(self, event: TwilioMarkEvent) -> None:
        logger.info("Received mark from Twilio", name=event.name)
        if event.name != HANGUP_MARK or self._state != CallState.AWAITING_HANGUP_ACK:
            return

        logger.info("Hangup mark received. Terminating call.", call_sid=self.call_sid or None)
        self._hangup_requested = True
        self._transition(CallState.CLOSED)
        await self.terminator.terminate(self.call_sid)

    # --- model side -----------------------------------------------------

    async def _handle_model_event(self, event: PeerEvent) -> None:
        if event.kind == PeerEventKind.OPENED:
            if self._transition(CallState.AWAITING_MODEL_READY):
                self._init_task = asyncio.create_task(self._initialize_after_settle())
            return

        if event.kind == PeerEventKind.FAILED:
            logger.error("OpenAI Realtime unavailable; call continues without a model", error=event.error)
            return

        if event.kind == PeerEventKind.CLOSED:
            logger.info("Disconnected from the OpenAI Realtime API", call_sid=self.call_sid or None)
            self._transition(CallState.CLOSED)
            return

        message: RealtimeEvent = event.message
        if message.raw_type in LOG_EVENT_TYPES:
            logger.info("Received event", type=message.raw_type, payload=message.raw)

        if message.is_error:
            return

        if self._state == CallState.AWAITING_MODEL_READY:
            self._transition(CallState.ACTIVE)

        if message.type == RealtimeEventType.AUDIO_DELTA:
            await self._forward_model_audio(message)
        elif message.type == RealtimeEventType.SPEECH_STARTED:
            self.speech_started = True
        elif message.type == RealtimeEventType.RESPONSE_DONE:
            await self._handle_response_done(message)

    async def _initialize_after_settle(self) -> None:
        await asyncio.sleep(self.config.settle_delay_seconds)
        await self.initializer.initialize(self.model, self.context)

    async def _forward_model_audio(self, event: RealtimeEvent) -> None:
        if not event.delta or not self.stream_sid:
            return
        try:
            await self.telephony.send(create_media_message(self.stream_sid, event.delta))
        except PeerUnavailableError as e:
            logger.debug("Dropping assistant audio", error=str(e))

    async def _handle_response_done(self, event: RealtimeEvent) -> None:
        if not self.speech_started or event.response_status != "completed":
            return
        if self._state != CallState.ACTIVE:
            return
        if not self.stream_sid:
            logger.warning("Final response without a stream; cannot send hangup mark")
            return

        logger.info("Final response generated. Sending hangup mark to Twilio.", call_sid=self.call_sid or None)
        try:
            await self.telephony.send(create_mark_message(self.stream_sid, HANGUP_MARK))
        except PeerUnavailableError as e:
            logger.warning("Could not send hangup mark", error=str(e))
            return
        self._transition(CallState.AWAITING_HANGUP_ACK)

    # --- teardown -------------------------------------------------------

    async def _teardown(self) -> None:
        for task in (self._init_task, self._model_open_task):
            if task and not task.done():
                task.cancel()
        await asyncio.gather(
            *[t for t in (self._init_task, self._model_open_task) if t],
            return_exceptions=True,
        )

        await self.model.close()
        await self.telephony.close()

        logger.info(
            "Call session closed",
            call_sid=self.call_sid or None,
            duration_s=round(time.time() - self.created_at, 2),
        )


def create_call_session(
    telephony: PeerConnection,
    *,
    config: Config,
    terminator: CallTerminator,
    model: Optional[PeerConnection] = None,
    rng: Optional[random.Random] = None,
) -> CallSession:
    """Build a session for a newly accepted telephony connection."""
    return CallSession(
        config=config,
        telephony=telephony,
        model=model or ModelPeer(config),
        terminator=terminator,
        context=UtteranceContext.generate(config.prompt_profiles, rng=rng),
    )
