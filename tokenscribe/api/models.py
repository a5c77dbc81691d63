"""Response dataclasses for the quota store and transcription functions.

WHY: The remote functions return small flat JSON objects. Typed
dataclasses make their fields explicit and keep the dict-poking in one
place.

HOW: Each dataclass maps 1:1 to one function's JSON response; from_dict
handles parsing from the raw body.

RULES:
- TranscribeResponse.code: 1 = transcript ready, 2 = not enough tokens
- tokens on a TranscribeResponse is the authoritative remaining balance
- Balances are parsed as int; a missing tokens field on a profile is an error
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

CODE_READY = 1
CODE_INSUFFICIENT_TOKENS = 2


@dataclass
class ProfileResponse:
    """Body of the get-profile function: the user's profile row."""

    tokens: int
    id: str | None = None
    email: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> ProfileResponse:
        return cls(
            tokens=int(data["tokens"]),
            id=data.get("id"),
            email=data.get("email"),
        )


@dataclass
class DeductResponse:
    """Body of a successful deduct-tokens call."""

    success: bool
    new_token_balance: int

    @classmethod
    def from_dict(cls, data: dict) -> DeductResponse:
        return cls(
            success=bool(data.get("success", False)),
            new_token_balance=int(data["newTokenBalance"]),
        )


@dataclass
class TranscribeResponse:
    """Body of the transcribe function.

    RULES:
    - code is CODE_READY with a transcript, or CODE_INSUFFICIENT_TOKENS
      with the remaining balance in tokens
    - transcript is whatever the speech service returned (opaque)
    """

    code: int
    description: str = ""
    tokens: int | None = None
    transcript: Any = None

    @property
    def ready(self) -> bool:
        return self.code == CODE_READY

    @property
    def insufficient_tokens(self) -> bool:
        return self.code == CODE_INSUFFICIENT_TOKENS

    @classmethod
    def from_dict(cls, data: dict) -> TranscribeResponse:
        tokens = data.get("tokens")
        return cls(
            code=int(data["code"]),
            description=data.get("description", ""),
            tokens=int(tokens) if tokens is not None else None,
            transcript=data.get("transcript"),
        )
