"""
Opening sequence for a Realtime session.

Once the model socket is ready the relay pins the audio format, hands the
model its per-call instructions, and seeds a scripted first turn so the
assistant speaks before the caller does.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from src.relay.config import Config
from src.relay.errors import PeerUnavailableError
from src.relay.peers import PeerConnection
from src.relay.realtime_protocol import (
    create_response_request,
    create_session_update,
    create_user_message,
)

logger = structlog.get_logger(__name__)

REFERENCE_ID_MIN = 100000
REFERENCE_ID_MAX = 999999

INSTRUCTIONS_TEMPLATE = (
    "Ju jeni një asistent zanor që telefonon nga {profile}. "
    "Detyra juaj është të konfirmoni porosinë me numër {reference_id}. Flisni shqip. "
    "Pasi përdoruesi përgjigjet, ose falënderojeni për konfirmimin ose thojuni se "
    "një përfaqësues do t'i kontaktojë. Mbylleni bisedën me \"Mirupafshim!\"."
)

GREETING_TEMPLATE = (
    "Përshëndeteni përdoruesin në shqip me \"Përshëndetje, po ju telefonojmë nga {profile} "
    "për të konfirmuar porosinë tuaj me numër {reference_id}. "
    "A është gjithçka në rregull për ta konfirmuar?\""
)


@dataclass(frozen=True)
class UtteranceContext:
    """Per-call parameters for the scripted opener. Immutable once generated."""
    prompt_profile: str
    reference_id: int

    @classmethod
    def generate(
        cls,
        profiles: Sequence[str],
        rng: Optional[random.Random] = None,
    ) -> "UtteranceContext":
        """Pick a profile and a 6-digit reference id for a new call."""
        if not profiles:
            raise ValueError("At least one prompt profile is required")
        rng = rng or random.Random()
        return cls(
            prompt_profile=rng.choice(list(profiles)),
            reference_id=rng.randint(REFERENCE_ID_MIN, REFERENCE_ID_MAX),
        )

    @property
    def instructions(self) -> str:
        return INSTRUCTIONS_TEMPLATE.format(profile=self.prompt_profile, reference_id=self.reference_id)

    @property
    def greeting(self) -> str:
        return GREETING_TEMPLATE.format(profile=self.prompt_profile, reference_id=self.reference_id)


class SessionInitializer:
    """Sends session.update, the synthetic first user turn, and response.create."""

    def __init__(self, config: Config):
        self.config = config

    async def initialize(self, peer: PeerConnection, context: UtteranceContext) -> bool:
        """
        Run the opening sequence on the model peer.

        Returns:
            True if every event was queued, False if the peer was unavailable
            (the call then continues without a scripted opener)
        """
        session_update = create_session_update(
            model=self.config.openai_realtime_model,
            voice=self.config.openai_realtime_voice,
            instructions=context.instructions,
        )

        try:
            logger.info(
                "Sending session update",
                model=self.config.openai_realtime_model,
                voice=self.config.openai_realtime_voice,
                prompt_profile=context.prompt_profile,
                reference_id=context.reference_id,
            )
            await peer.send(session_update)
            await peer.send(create_user_message(context.greeting))
            await peer.send(create_response_request())
        except PeerUnavailableError as e:
            logger.warning("Session initialization skipped", error=str(e))
            return False

        return True
