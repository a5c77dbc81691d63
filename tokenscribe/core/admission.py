"""Admission control: gate candidates on the token balance.

WHY: A file must not enter the queue if the user cannot pay for it. The
remote balance only drops once a transcription is settled, which can be
minutes later, so several files submitted together would each see the
full balance and all be admitted. The controller therefore keeps a
local ledger of tokens reserved by admitted-but-unsettled items.

HOW: admit() is a pure decision over (required, available). The
AdmissionController holds the freshest known remote balance plus a
reservation per admitted item; ``available = balance - reserved``.
Callers admit and reserve without an await in between, so on a single
event loop two admissions can never interleave.

RULES:
- Accept iff available >= required
- A rejection never mutates the balance, the ledger or the queue
- Reservations are released exactly once: on settlement or failure
- A settled item's release and the new authoritative balance are
  applied together (confirm()), so the charge is never counted twice
- A balance read issued before a later charge never overwrites it
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from tokenscribe.core.errors import ADMISSION, InsufficientBalance, Unauthorized
from tokenscribe.core.session import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admission:
    """Outcome of an admission check."""

    accepted: bool
    required: int
    available: int

    @property
    def shortfall(self) -> Optional[Dict[str, int]]:
        if self.accepted:
            return None
        return {"required": self.required, "available": self.available}

    def to_error(self) -> InsufficientBalance:
        return InsufficientBalance(self.required, self.available, source=ADMISSION)


def admit(required: int, available: int) -> Admission:
    """Decide whether ``required`` tokens fit into ``available``."""
    return Admission(accepted=available >= required, required=required, available=available)


class AdmissionController:
    """Cached balance plus per-item token reservations for one session.

    HOW: Balance answers can arrive out of order. A read is tagged with a
    ticket() taken before it is issued. Answers the store gives while
    charging or refusing go through lower_balance(): they only ever lower
    the cache and fence off every read issued before them, so a late read
    can never hand back tokens a settlement already spent.

    RULES:
    - balance is None until the first refresh; admission then fails closed
    - reserve() is keyed by queue item id; double reservation is an error
    - available never goes below zero
    - A read whose ticket predates the last charge/refusal is discarded
    """

    def __init__(self, balance: Optional[int] = None) -> None:
        self._balance = balance
        self._reservations: Dict[str, int] = {}
        self._seq = 0
        self._fence = 0

    @property
    def balance(self) -> Optional[int]:
        return self._balance

    @property
    def reserved(self) -> int:
        return sum(self._reservations.values())

    @property
    def available(self) -> int:
        if self._balance is None:
            return 0
        return max(0, self._balance - self.reserved)

    def ticket(self) -> int:
        """Sequence number to take just before issuing a balance read."""
        self._seq += 1
        return self._seq

    def update_balance(self, balance: int, ticket: Optional[int] = None) -> bool:
        """Record a balance read from the quota store.

        Returns False (and keeps the cache) when ``ticket`` was taken
        before the last charge or refusal was applied.
        """
        if balance < 0:
            raise ValueError(f"Balance must be >= 0, got {balance}")
        if ticket is not None and ticket <= self._fence:
            logger.debug("Discarding stale balance read %d (ticket %d)", balance, ticket)
            return False
        self._balance = balance
        return True

    def lower_balance(self, balance: int) -> None:
        """Adopt a balance reported while charging or refusing an item."""
        if balance < 0:
            raise ValueError(f"Balance must be >= 0, got {balance}")
        if self._balance is None or balance < self._balance:
            self._balance = balance
        self._fence = self._seq

    def admit(self, session: Session, required: int) -> Admission:
        """Evaluate ``required`` against the unreserved balance.

        RULES:
        - Raises Unauthorized for an unauthenticated session
        - Does not reserve; call reserve() with the new item id on accept
        """
        if not session.is_authenticated:
            raise Unauthorized()
        decision = admit(required, self.available)
        if not decision.accepted:
            logger.warning(
                "Admission rejected: %d tokens required, %d available",
                decision.required,
                decision.available,
            )
        return decision

    def reserve(self, item_id: str, tokens: int) -> None:
        if item_id in self._reservations:
            raise ValueError(f"Tokens already reserved for item {item_id}")
        self._reservations[item_id] = tokens

    def release(self, item_id: str) -> int:
        """Drop an item's reservation; returns the tokens released (0 if none)."""
        return self._reservations.pop(item_id, 0)

    def confirm(self, item_id: str, new_balance: int) -> None:
        """Apply a settled charge: release the reservation, lower the balance."""
        self.release(item_id)
        self.lower_balance(new_balance)
