"""Transcription job runner: one remote call and one settlement per item.

WHY: Each admitted item has to be sent to the transcription service,
shown with moving progress while the service works, charged only if
the service actually produced a transcript, and left in a terminal
state whatever happens - without touching any other item.

HOW: launch() starts run() as a background asyncio task per item. run()
moves the item to running, starts a ProgressDriver, awaits the remote
call, and on success stops the driver and awaits settlement before
marking the item completed, which is when progress becomes 100. Every failure is captured into an ItemError
on the item. Removing an item stops its driver at once; the in-flight
call is left to finish and its outcome is dropped by the queue.

RULES:
- Exactly one transcribe call per item; no retries at this layer
- No settlement after a failed call (nothing is charged)
- Settlement runs even if the item was removed meanwhile: if the
  service transcribed, the user is charged
- Settlement failure -> failed/"settlement_failed" with the transcript
  attached to the error (result stays empty)
- Insufficient tokens at call or settlement time -> failed/
  "insufficient_balance" plus an insufficient-balance signal carrying
  the authoritative balance
- The item's token reservation is released on every exit path
- Progress reaches 100 only with the completed state; every failure,
  including a failed settlement, leaves it where pacing stopped
- A code-2 answer without a balance leaves the cached balance alone
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from tokenscribe.api.client import TranscriptionAPIError
from tokenscribe.core.admission import AdmissionController
from tokenscribe.core.errors import (
    SERVER,
    InsufficientBalance,
    SettlementFailed,
    TranscriptionFailed,
    TransientError,
    Unauthorized,
)
from tokenscribe.core.progress import ProgressDriver
from tokenscribe.core.protocols import Transcriber
from tokenscribe.core.queue import ItemError, ItemState, QueueManager
from tokenscribe.core.session import Session
from tokenscribe.core.settlement import QuotaSettlement

logger = logging.getLogger(__name__)

TRANSCRIPTION_FAILED = "transcription_failed"
INSUFFICIENT_BALANCE = "insufficient_balance"
SETTLEMENT_FAILED = "settlement_failed"
UNAUTHORIZED = "unauthorized"

BalanceListener = Callable[[InsufficientBalance], None]


class JobRunner:
    """Drives admitted queue items through transcription and settlement."""

    def __init__(
        self,
        queue: QueueManager,
        admission: AdmissionController,
        transcription: Transcriber,
        settlement: QuotaSettlement,
        tick_s: Optional[float] = None,
    ) -> None:
        self._queue = queue
        self._admission = admission
        self._transcription = transcription
        self._settlement = settlement
        self._tick_s = tick_s
        self._drivers: Dict[str, ProgressDriver] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._balance_listeners: List[BalanceListener] = []
        queue.on_remove(self._stop_driver)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def on_insufficient_balance(self, listener: BalanceListener) -> None:
        """Register a listener for server-reported insufficient balance."""
        self._balance_listeners.append(listener)

    def launch(self, session: Session, item_id: str) -> asyncio.Task:
        """Run ``item_id`` in the background; returns its task."""
        task = asyncio.get_running_loop().create_task(self.run(session, item_id))
        self._tasks[item_id] = task
        task.add_done_callback(lambda _t, key=item_id: self._tasks.pop(key, None))
        return task

    @property
    def active(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every launched job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel every in-flight job and wait for the cancellations."""
        for task in list(self._tasks.values()):
            task.cancel()
        await self.wait_idle()

    async def run(self, session: Session, item_id: str) -> None:
        """Process one admitted item to a terminal state."""
        item = self._queue.get(item_id)
        if item is None or self._queue.transition(item_id, ItemState.RUNNING) is None:
            self._admission.release(item_id)
            return

        driver = ProgressDriver(
            item.estimated_processing_seconds,
            lambda value: self._tick(item_id, value),
            tick_s=self._tick_s,
        )
        self._drivers[item_id] = driver
        driver.start()
        logger.info("Started item %s (%s)", item_id, item.file_name)

        try:
            await self._execute(session, item_id, item.file_name, item.source_ref, item.tokens_required)
        except Unauthorized as exc:
            self._fail(item_id, ItemError(UNAUTHORIZED, str(exc)))
        except TranscriptionFailed as exc:
            self._fail(item_id, ItemError(TRANSCRIPTION_FAILED, str(exc)))
        except SettlementFailed as exc:
            logger.warning("Settlement failed for item %s: %s", item_id, exc)
            self._fail(item_id, ItemError(SETTLEMENT_FAILED, str(exc), transcript=exc.transcript))
        except Exception as exc:
            logger.exception("Job for item %s failed unexpectedly", item_id)
            self._fail(item_id, ItemError(TRANSCRIPTION_FAILED, str(exc) or type(exc).__name__))
        finally:
            self._stop_driver(item_id)
            self._admission.release(item_id)

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    async def _execute(
        self,
        session: Session,
        item_id: str,
        file_name: str,
        payload: bytes,
        tokens_required: int,
    ) -> None:
        try:
            response = await self._transcription.transcribe(session, payload, file_name)
        except TranscriptionAPIError as exc:
            raise TranscriptionFailed(exc.message) from exc
        except httpx.HTTPError as exc:
            raise TranscriptionFailed(f"Transcription service unreachable: {exc}") from exc
        finally:
            self._stop_driver(item_id)

        if response.insufficient_tokens:
            if response.tokens is None:
                error = InsufficientBalance(tokens_required, self._admission.available, source=SERVER)
                self._refused(item_id, error, balance_known=False)
            else:
                self._refused(item_id, InsufficientBalance(tokens_required, response.tokens, source=SERVER))
            return

        if not response.ready:
            raise TranscriptionFailed(response.description or f"Unexpected response code {response.code}")

        try:
            new_balance = await self._settlement.settle(session, tokens_required)
        except InsufficientBalance as exc:
            self._refused(item_id, exc, transcript=response.transcript)
            return
        except (TransientError, Unauthorized) as exc:
            raise SettlementFailed(
                f"Transcription succeeded but billing could not be confirmed: {exc}",
                transcript=response.transcript,
            ) from exc

        self._admission.confirm(item_id, new_balance)
        if self._queue.transition(item_id, ItemState.COMPLETED, {"result": response.transcript}):
            logger.info("Completed item %s, balance now %d", item_id, new_balance)
        else:
            logger.info("Settled removed item %s, balance now %d", item_id, new_balance)

    def _refused(
        self,
        item_id: str,
        error: InsufficientBalance,
        transcript: Any = None,
        balance_known: bool = True,
    ) -> None:
        """Handle a server-side insufficient balance answer."""
        logger.warning("Item %s refused by server: %s", item_id, error)
        self._admission.release(item_id)
        balance = error.available if balance_known else None
        if balance is not None:
            self._admission.lower_balance(balance)
        self._fail(
            item_id,
            ItemError(INSUFFICIENT_BALANCE, str(error), balance=balance, transcript=transcript),
        )
        for listener in list(self._balance_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Insufficient-balance listener %r failed", listener)

    def _fail(self, item_id: str, error: ItemError) -> None:
        current = self._queue.get(item_id)
        if current is None or current.state.is_terminal:
            return
        if self._queue.transition(item_id, ItemState.FAILED, {"error": error}):
            logger.warning("Item %s failed (%s): %s", item_id, error.kind, error.message)

    def _tick(self, item_id: str, value: float) -> bool:
        return self._queue.transition(item_id, ItemState.RUNNING, {"progress": value}) is not None

    def _stop_driver(self, item_id: str) -> None:
        driver = self._drivers.pop(item_id, None)
        if driver is not None:
            driver.stop()
