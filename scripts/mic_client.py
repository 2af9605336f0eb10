#!/usr/bin/env python3
"""
Local "fake Twilio" client.

Streams your microphone to the relay's /media-stream endpoint and plays the
assistant's audio through your speakers.

Environment:
  WS_URL         relay endpoint (default ws://localhost:5050/media-stream)
  PLAYBACK_GAIN  playback gain, 1.0-3.0 typical (default 1.8)
  MIC_DEVICE     sounddevice input device name or index (default: system default)
  LOG_LEVEL      log level (default INFO)

Usage:
  python scripts/mic_client.py
"""

from __future__ import annotations

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.relay.logging_config import configure_logging
from src.relay.simulator import LocalSimulator, SimulatorConfig


def main() -> None:
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    simulator = LocalSimulator(SimulatorConfig.from_env())
    try:
        asyncio.run(simulator.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
