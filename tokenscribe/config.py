"""Configuration constants, accepted audio types, and .env loading.

WHY: Centralizes every tunable value (service URL, size limit, pacing
interval, pricing ratios) so they are easy to find and override. The
session used by the CLI and the HTTP server is also read from here.

HOW: python-dotenv loads the .env file on import. Constants are defined
as module-level values, each overridable through an environment
variable. load_session() builds a Session from the environment.

RULES:
- Pricing: 1 token per started second of audio
- Processing time is modelled as 1/6th of the audio duration
- Simulated progress never exceeds PROGRESS_CEILING before completion
- A missing bearer token yields an unauthenticated session, not an error
"""

from __future__ import annotations

import os

from dotenv import load_dotenv

from tokenscribe.core.session import Session

# Load .env from the project root (where the script is run from)
load_dotenv()

# ---------------------------------------------------------------------------
# Remote services
# ---------------------------------------------------------------------------

FUNCTIONS_BASE_URL = os.getenv(
    "TOKENSCRIBE_FUNCTIONS_URL", "http://localhost:54321/functions/v1"
)
HTTP_TIMEOUT_S = float(os.getenv("TOKENSCRIBE_HTTP_TIMEOUT_S", "300"))
FFPROBE_BINARY = os.getenv("FFPROBE_BINARY", "ffprobe")

# ---------------------------------------------------------------------------
# Accepted input
# ---------------------------------------------------------------------------

ACCEPTED_MIME_PREFIX = "audio/"

AUDIO_EXTENSIONS: set[str] = {
    ".aac", ".aiff", ".amr", ".flac", ".m4a", ".mp3",
    ".ogg", ".opus", ".wav", ".webm", ".wma",
}
"""Audio file extensions accepted when no MIME type is supplied (lowercase, with dot)."""

MAX_FILE_BYTES = int(float(os.getenv("TOKENSCRIBE_MAX_FILE_MB", "100")) * 1024 * 1024)

# ---------------------------------------------------------------------------
# Pricing and progress pacing
# ---------------------------------------------------------------------------

SECONDS_PER_TOKEN = 1
PROCESSING_RATIO = 6
PROGRESS_CEILING = 95.0
PROGRESS_TICK_S = float(os.getenv("TOKENSCRIBE_PROGRESS_TICK_S", "0.5"))


def load_session() -> Session:
    """Build the caller's session from the environment.

    WHY: The CLI and the HTTP server run on behalf of one signed-in user.
    The core never looks the session up itself; it is passed in
    explicitly so tests can supply fixed identities.

    RULES:
    - Reads TOKENSCRIBE_BEARER_TOKEN and TOKENSCRIBE_USER_ID
    - Empty or missing token -> unauthenticated Session (fails closed later)
    """
    token = os.getenv("TOKENSCRIBE_BEARER_TOKEN", "").strip()
    user_id = os.getenv("TOKENSCRIBE_USER_ID", "").strip()
    return Session(user_id=user_id or None, bearer_token=token or None)
