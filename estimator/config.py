"""Runtime configuration.

Every value can be overridden through the environment or a local ``.env``
file:

    GEMINI_API_KEY: Google AI API key (required for live calls)
    GEMINI_MODEL: Model used by the scan agents (default: gemini-3-flash-preview)
    GEMINI_PRO_MODEL: Model used for pricing and estimation (default: gemini-3-pro-preview)
    GEMINI_LIVE_MODEL: Native-audio model for voice sessions
    GEMINI_VOICE: Prebuilt voice name (default: Kore)
"""

from __future__ import annotations

import os

from dotenv import load_dotenv
from google import genai

load_dotenv()

# =============================================================================
# Gemini
# =============================================================================

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-3-flash-preview")
GEMINI_PRO_MODEL = os.getenv("GEMINI_PRO_MODEL", "gemini-3-pro-preview")
GEMINI_LIVE_MODEL = os.getenv("GEMINI_LIVE_MODEL", "gemini-2.5-flash-native-audio-preview-12-2025")
GEMINI_VOICE = os.getenv("GEMINI_VOICE", "Kore")

# =============================================================================
# Rate limiting
# =============================================================================

RETRY_MAX_RETRIES = int(os.getenv("RETRY_MAX_RETRIES", "3"))
RETRY_INITIAL_DELAY = float(os.getenv("RETRY_INITIAL_DELAY", "5.0"))  # seconds
SCAN_COOLDOWN_SECONDS = float(os.getenv("SCAN_COOLDOWN_SECONDS", "3.0"))

# =============================================================================
# Audio
# =============================================================================

CAPTURE_SAMPLE_RATE = 16000  # Gemini expects 16kHz PCM input
PLAYBACK_SAMPLE_RATE = 24000  # Gemini outputs 24kHz PCM

SERVER_PORT = int(os.getenv("SERVER_PORT", "8000"))


def make_client(api_key: str | None = None) -> genai.Client:
    """Build the Gemini client shared by scans, estimates and voice sessions."""
    return genai.Client(api_key=api_key or GEMINI_API_KEY or None)
