"""Collaborator interfaces the queue core depends on.

The HTTP clients in tokenscribe.api and FFprobeProber satisfy these
structurally; tests pass in-memory fakes.
"""

from __future__ import annotations

from typing import Protocol

from tokenscribe.api.models import TranscribeResponse
from tokenscribe.core.session import Session


class QuotaStore(Protocol):
    """Remote token balance with an atomic conditional decrement."""

    async def read_balance(self, session: Session) -> int:
        ...

    async def deduct_tokens(self, session: Session, tokens: int) -> int:
        ...


class Transcriber(Protocol):
    """Remote transcription call, made once per item."""

    async def transcribe(self, session: Session, audio: bytes, file_name: str) -> TranscribeResponse:
        ...


class Prober(Protocol):
    """Duration probe; raises Unreadable when the payload cannot be parsed."""

    async def probe(self, payload: bytes, file_name: str) -> float:
        ...
