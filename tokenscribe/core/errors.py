"""Error taxonomy for the upload queue.

WHY: Callers render different messages (and offer different actions)
for a rejected file, an unreadable file, a short balance, a failed
transcription, and a failed charge. A typed hierarchy lets them branch
on the class instead of parsing strings.

HOW: Every error derives from TokenscribeError. Validation and admission
errors are returned per file from Uploader.submit(); runtime errors are
captured into the failing item's ItemError record.

RULES:
- InsufficientBalance.source distinguishes the client estimate
  ("admission") from the authoritative server answer ("server")
- SettlementFailed may carry the transcript that could not be billed
- InvalidTransition is a programming error and is always raised
"""

from __future__ import annotations

from typing import Any, Dict, Optional

ADMISSION = "admission"
SERVER = "server"


class TokenscribeError(Exception):
    """Base class for every error raised by the upload queue."""


class InvalidInput(TokenscribeError):
    """File failed type or size validation and never reached the queue."""

    def __init__(self, file_name: str, reason: str) -> None:
        self.file_name = file_name
        self.reason = reason
        super().__init__(f"{file_name}: {reason}")


class Unreadable(TokenscribeError):
    """The duration probe could not parse the payload."""

    def __init__(self, file_name: str, reason: str = "Cannot read the audio file") -> None:
        self.file_name = file_name
        self.reason = reason
        super().__init__(f"{file_name}: {reason}")


class InsufficientBalance(TokenscribeError):
    """The balance cannot cover the cost of a file.

    RULES:
    - required/available are whole tokens
    - source is ADMISSION for the client-side pre-check, SERVER when the
      quota store or transcription service refused at call time
    """

    def __init__(self, required: int, available: int, source: str = ADMISSION) -> None:
        self.required = required
        self.available = available
        self.source = source
        super().__init__(
            f"Insufficient tokens ({source}): {required} required, {available} available"
        )

    @property
    def shortfall(self) -> Dict[str, int]:
        return {"required": self.required, "available": self.available}


class TranscriptionFailed(TokenscribeError):
    """The remote transcription call failed; nothing was charged."""


class SettlementFailed(TokenscribeError):
    """The transcription succeeded but the charge could not be confirmed."""

    def __init__(self, message: str, transcript: Optional[Any] = None) -> None:
        self.transcript = transcript
        super().__init__(message)


class TransientError(TokenscribeError):
    """Connectivity or remote-side fault talking to the quota store."""


class Unauthorized(TokenscribeError):
    """No valid session; nothing may be admitted or settled."""

    def __init__(self, message: str = "Sign in to upload audio files") -> None:
        super().__init__(message)


class InvalidTransition(TokenscribeError):
    """A queue item was asked to take an edge its state machine forbids."""

    def __init__(self, item_id: str, current: str, requested: str, detail: str = "") -> None:
        self.item_id = item_id
        self.current = current
        self.requested = requested
        message = f"Item {item_id}: cannot go from {current} to {requested}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
