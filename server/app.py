"""
FastAPI server for the Twilio realtime relay.

Endpoints:
- GET /: Status message
- GET /health: Health check
- GET /metrics: JSON metrics
- GET|POST /incoming-call: TwiML for the Twilio voice webhook
- WS /media-stream: Twilio Media Streams WebSocket
"""

import asyncio
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.relay.config import get_config, init_config
from src.relay.errors import ConfigError
from src.relay.logging_config import configure_logging
from src.relay.peers import TelephonyPeer
from src.relay.session import create_call_session
from src.relay.terminator import CallTerminator

logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_calls: int = 0
    active_calls: int = 0
    hangups: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "hangups": self.hangups,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()

# Shared by every call; built lazily so tests can run without credentials.
_terminator: Optional[CallTerminator] = None


def get_terminator() -> CallTerminator:
    global _terminator
    if _terminator is None:
        _terminator = CallTerminator(get_config())
    return _terminator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Twilio realtime relay...")

    try:
        config = init_config()
        configure_logging(config.log_level)
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    logger.info("Server is listening", port=config.port)

    yield

    logger.info("Shutting down server...")


app = FastAPI(
    title="Twilio Realtime Relay",
    description="Relays Twilio Media Streams to the OpenAI Realtime API",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/")
async def root() -> JSONResponse:
    return JSONResponse(content={"message": "Twilio Media Stream Server is running!"})


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.post("/incoming-call")
@app.get("/incoming-call")
async def incoming_call(request: Request) -> Response:
    """
    Generate TwiML for the Twilio voice webhook.

    Returns TwiML that connects the call to our media-stream WebSocket.
    """
    host = get_config().public_host or request.headers.get("host", "")
    ws_url = f"wss://{host}/media-stream"

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Pause length="1"/>
    <Connect>
        <Stream url="{ws_url}" />
    </Connect>
</Response>"""

    logger.info("Generated TwiML", ws_url=ws_url)

    return Response(content=twiml, media_type="application/xml")


async def _pump_telephony(websocket: WebSocket, telephony: TelephonyPeer) -> None:
    """Feed Twilio frames into the telephony peer until the socket goes away."""
    try:
        while True:
            telephony.feed(await websocket.receive_text())
    except WebSocketDisconnect:
        pass
    finally:
        telephony.notify_closed()


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One call session per connection; returns when either the caller or the
    model side goes away.
    """
    await websocket.accept()

    metrics.total_calls += 1
    metrics.active_calls += 1
    logger.info("Client connected", active_calls=metrics.active_calls)

    telephony = TelephonyPeer(
        websocket.send_text,
        websocket.close,
        queue_size=get_config().peer_send_queue_size,
    )
    session = create_call_session(telephony, config=get_config(), terminator=get_terminator())

    session_task = asyncio.create_task(session.run())
    receiver = asyncio.create_task(_pump_telephony(websocket, telephony))

    try:
        await asyncio.wait({session_task, receiver}, return_when=asyncio.FIRST_COMPLETED)
        # Either side finishing ends the call; session.run() closes both peers.
        await session_task
    except Exception as e:
        logger.error("Call session failed", error=str(e))
        metrics.errors += 1
    finally:
        receiver.cancel()
        await asyncio.gather(receiver, return_exceptions=True)
        if not session_task.done():
            session_task.cancel()
            await asyncio.gather(session_task, return_exceptions=True)

        if session.hangup_mark_sent and session.is_closed:
            metrics.hangups += 1
        metrics.active_calls -= 1

        logger.info("Client disconnected.", call_sid=session.call_sid or None, active_calls=metrics.active_calls)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    try:
        config.validate()
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
