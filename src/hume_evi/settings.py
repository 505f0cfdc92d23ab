"""
src/hume_evi/settings.py
========================
Central place for every environment variable and default used by the
Hume EVI client.
"""

from __future__ import annotations

import os

from dotenv import load_dotenv

# Load environment variables from .env file; real environment wins
load_dotenv(override=False)

# ------------------------------------------------------------------------------
# Credentials & endpoints
# ------------------------------------------------------------------------------
HUME_API_KEY: str = os.getenv("HUME_API_KEY", "")
HUME_BASE_URL: str = os.getenv("HUME_BASE_URL", "https://api.hume.ai/v0")
HUME_CONFIG_ID: str = os.getenv("HUME_CONFIG_ID", "")

# api_key -> X-Hume-Api-Key header, bearer -> Authorization: Bearer
HUME_AUTH_SCHEME: str = os.getenv("HUME_AUTH_SCHEME", "api_key")

# ------------------------------------------------------------------------------
# Timeouts (seconds)
# ------------------------------------------------------------------------------
HUME_HANDSHAKE_TIMEOUT: float = float(os.getenv("HUME_HANDSHAKE_TIMEOUT", "15"))
HUME_HTTP_TIMEOUT: float = float(os.getenv("HUME_HTTP_TIMEOUT", "30"))
HUME_CLOSE_TIMEOUT: float = float(os.getenv("HUME_CLOSE_TIMEOUT", "5"))

# ------------------------------------------------------------------------------
# Voice chat behaviour
# ------------------------------------------------------------------------------
# drop | forward
HUME_UNKNOWN_MESSAGE_POLICY: str = os.getenv("HUME_UNKNOWN_MESSAGE_POLICY", "drop")

# Defaults for parameter-based chat endpoints
DEFAULT_SAMPLE_RATE: int = 16000
DEFAULT_CHANNELS: int = 1
DEFAULT_BITS_PER_SAMPLE: int = 16

# REST listing defaults
DEFAULT_PAGE_SIZE: int = 10
