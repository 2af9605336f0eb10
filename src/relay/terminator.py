"""
Hangs up calls through the Twilio REST API.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from src.relay.config import Config
from src.relay.errors import TerminationError

logger = structlog.get_logger(__name__)


class CallTerminator:
    """
    Marks calls completed on the Twilio control plane.

    One instance is shared by every call in the process. The REST client is
    synchronous, so requests run in a worker thread and are serialized.
    """

    def __init__(self, config: Config, client: Optional[Any] = None):
        self.config = config
        self._client = client
        self._lock = asyncio.Lock()

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )
        return self._client

    async def terminate(self, call_sid: str) -> bool:
        """
        Hang up the call.

        Failures are logged and reported as False; the call is ending either
        way and Twilio times out the stream on its own.
        """
        if not call_sid:
            logger.warning("Cannot hang up - missing call_sid")
            return False

        async with self._lock:
            try:
                logger.info("Hanging up call", call_sid=call_sid)
                await asyncio.to_thread(self._complete, call_sid)
            except TerminationError as e:
                logger.error("Failed to hang up call", call_sid=call_sid, error=str(e))
                return False

        logger.info("Call hung up", call_sid=call_sid)
        return True

    def _complete(self, call_sid: str) -> None:
        try:
            self.client.calls(call_sid).update(status="completed")
        except (TwilioException, OSError) as e:
            raise TerminationError(str(e)) from e
