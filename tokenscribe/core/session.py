"""Explicit identity context for admission and settlement calls."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Session:
    """The signed-in user as seen by the queue core.

    RULES:
    - bearer_token is attached to every remote call
    - A session without a token is unauthenticated; the core fails closed
    """

    user_id: Optional[str] = None
    bearer_token: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return bool(self.bearer_token)

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.bearer_token}"}
