"""Quota settlement: charge tokens after a successful transcription.

WHY: The balance lives in the remote quota store and several items may
finish at about the same time. Computing ``cached - cost`` on the client
and writing it back would lose charges, so every charge goes through
the store's own atomic read-then-conditionally-subtract operation.

HOW: QuotaSettlement wraps a quota client (anything with
read_balance(session) and deduct_tokens(session, n)) and translates its
failures into the queue's error taxonomy.

RULES:
- settle() returns the store's new balance, never a client-side guess
- A zero-token charge performs no deduction and returns the remote balance
- "Insufficient tokens" from the store -> InsufficientBalance(source="server")
  carrying the authoritative balance when it can be read
- Any other store or transport failure -> TransientError, never retried here
- Unauthenticated sessions fail closed with Unauthorized before any call
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from tokenscribe.api.client import QuotaAPIError
from tokenscribe.core.errors import SERVER, InsufficientBalance, TransientError, Unauthorized
from tokenscribe.core.protocols import QuotaStore
from tokenscribe.core.session import Session

logger = logging.getLogger(__name__)


class QuotaSettlement:
    """The single path through which the token balance is read and charged."""

    def __init__(self, quota: QuotaStore) -> None:
        self._quota = quota
        self._last_known: Optional[int] = None

    @property
    def last_known_balance(self) -> Optional[int]:
        """Most recent balance reported by the store (None before the first call)."""
        return self._last_known

    async def read_balance(self, session: Session) -> int:
        """Read the authoritative balance.

        Raises TransientError when the store cannot be reached or errors.
        """
        if not session.is_authenticated:
            raise Unauthorized()
        try:
            balance = await self._quota.read_balance(session)
        except QuotaAPIError as exc:
            raise TransientError(f"Failed to load token balance: {exc.message}") from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"Cannot reach the quota store: {exc}") from exc
        self._last_known = balance
        return balance

    async def settle(self, session: Session, tokens_required: int) -> int:
        """Charge ``tokens_required`` tokens; returns the new balance."""
        if not session.is_authenticated:
            raise Unauthorized()
        if tokens_required <= 0:
            return await self.read_balance(session)

        try:
            balance = await self._quota.deduct_tokens(session, tokens_required)
        except QuotaAPIError as exc:
            if exc.insufficient_tokens:
                available = await self._balance_after_refusal(session)
                logger.warning(
                    "Settlement refused: %d tokens required, %d available",
                    tokens_required,
                    available,
                )
                raise InsufficientBalance(tokens_required, available, source=SERVER) from exc
            raise TransientError(f"Failed to deduct tokens: {exc.message}") from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"Cannot reach the quota store: {exc}") from exc

        self._last_known = balance
        return balance

    async def _balance_after_refusal(self, session: Session) -> int:
        try:
            return await self.read_balance(session)
        except TransientError:
            logger.warning("Could not re-read balance after refused settlement")
            return self._last_known if self._last_known is not None else 0
