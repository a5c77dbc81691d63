"""Uploader: the single entry point from a front end into the queue.

WHY: A front end hands over a batch of files and wants, per file, either
a queue item id or a reason the file was turned away. Behind that call
sit validation, duration probing, cost estimation, admission against
the freshest balance, enqueueing and job launch, in that order.

HOW: submit() validates every file, probes the valid ones concurrently,
re-reads the balance once, then admits the candidates strictly in
submission order with no await in between, reserving tokens for each
accepted item before looking at the next. Accepted items are handed to
the JobRunner as background tasks. connect() opens the HTTP clients and
builds an Uploader on top of them.

RULES:
- An unauthenticated session raises Unauthorized before any queue change
- InvalidInput / Unreadable / InsufficientBalance are reported per file
  and never affect sibling files
- One balance read per submit(); if it fails, the last known balance is
  used, and with none known the submit fails with TransientError
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Iterable, List, Optional, Union

import httpx

from tokenscribe.api.client import QuotaClient, TranscriptionClient
from tokenscribe.core.admission import AdmissionController
from tokenscribe.core.costs import estimate_cost
from tokenscribe.core.errors import (
    InsufficientBalance,
    InvalidInput,
    TokenscribeError,
    TransientError,
    Unauthorized,
    Unreadable,
)
from tokenscribe.core.probe import FFprobeProber, validate_candidate
from tokenscribe.core.protocols import Prober, QuotaStore, Transcriber
from tokenscribe.core.queue import ItemState, QueueItem, QueueManager
from tokenscribe.core.runner import JobRunner
from tokenscribe.core.session import Session
from tokenscribe.core.settlement import QuotaSettlement

logger = logging.getLogger(__name__)


@dataclass
class UploadFile:
    """A file handed over by a front end."""

    name: str
    data: bytes
    content_type: Optional[str] = None


@dataclass
class SubmissionOutcome:
    """Per-file result of Uploader.submit().

    RULES:
    - Exactly one of item_id / error is set
    - error is InvalidInput, Unreadable or InsufficientBalance
    """

    file_name: str
    item_id: Optional[str] = None
    error: Optional[TokenscribeError] = None

    @property
    def accepted(self) -> bool:
        return self.item_id is not None


class Uploader:
    """Validates, prices, admits and launches uploads for one session."""

    def __init__(
        self,
        session: Session,
        quota: QuotaStore,
        transcription: Transcriber,
        queue: Optional[QueueManager] = None,
        admission: Optional[AdmissionController] = None,
        prober: Optional[Prober] = None,
        tick_s: Optional[float] = None,
    ) -> None:
        self.session = session
        self.queue = queue or QueueManager()
        self.admission = admission or AdmissionController()
        self.settlement = QuotaSettlement(quota)
        self.runner = JobRunner(
            self.queue, self.admission, transcription, self.settlement, tick_s=tick_s
        )
        self._prober: Prober = prober or FFprobeProber()

    # ------------------------------------------------------------------
    # Balance
    # ------------------------------------------------------------------

    async def refresh_balance(self) -> int:
        """Re-read the authoritative balance into the admission ledger.

        Returns the balance admission now works with. A read that was
        overtaken by a settlement is discarded in favour of the newer value.
        """
        ticket = self.admission.ticket()
        balance = await self.settlement.read_balance(self.session)
        if not self.admission.update_balance(balance, ticket):
            logger.info(
                "Balance read of %d overtaken by a settlement; keeping %d",
                balance,
                self.admission.balance,
            )
            return self.admission.balance
        return balance

    async def _balance_for_admission(self) -> None:
        try:
            await self.refresh_balance()
        except TransientError:
            if self.admission.balance is None:
                raise
            logger.warning(
                "Balance refresh failed; admitting against last known balance %d",
                self.admission.balance,
            )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, files: Iterable[UploadFile]) -> List[SubmissionOutcome]:
        """Admit a batch of files; returns one outcome per file, in order."""
        if not self.session.is_authenticated:
            raise Unauthorized()

        files = list(files)
        outcomes: List[Optional[SubmissionOutcome]] = [None] * len(files)

        candidates = []
        for index, upload in enumerate(files):
            try:
                validate_candidate(upload.name, upload.data, upload.content_type)
            except InvalidInput as exc:
                logger.warning("Rejected %s: %s", upload.name, exc.reason)
                outcomes[index] = SubmissionOutcome(upload.name, error=exc)
                continue
            candidates.append((index, upload))

        probed = await asyncio.gather(*(self._probe(upload) for _, upload in candidates))

        if any(not isinstance(result, Unreadable) for result in probed):
            await self._balance_for_admission()

        accepted: List[str] = []
        with self.queue.batch():
            for (index, upload), duration in zip(candidates, probed):
                if isinstance(duration, Unreadable):
                    outcomes[index] = SubmissionOutcome(upload.name, error=duration)
                    continue

                cost = estimate_cost(duration)
                decision = self.admission.admit(self.session, cost.tokens_required)
                if not decision.accepted:
                    outcomes[index] = SubmissionOutcome(upload.name, error=decision.to_error())
                    continue

                item_id = self.queue.enqueue(
                    file_name=upload.name,
                    duration_seconds=cost.duration_seconds,
                    tokens_required=cost.tokens_required,
                    estimated_processing_seconds=cost.estimated_processing_seconds,
                    source_ref=upload.data,
                )
                self.admission.reserve(item_id, cost.tokens_required)
                self.queue.transition(item_id, ItemState.ADMITTED)
                accepted.append(item_id)
                outcomes[index] = SubmissionOutcome(upload.name, item_id=item_id)

        for item_id in accepted:
            self.runner.launch(self.session, item_id)

        return [outcome for outcome in outcomes if outcome is not None]

    async def _probe(self, upload: UploadFile) -> Union[float, Unreadable]:
        try:
            return await self._prober.probe(upload.data, upload.name)
        except Unreadable as exc:
            logger.warning("Cannot read %s: %s", upload.name, exc.reason)
            return exc

    # ------------------------------------------------------------------
    # Queue pass-throughs
    # ------------------------------------------------------------------

    def remove(self, item_id: str) -> bool:
        return self.queue.remove(item_id)

    def snapshot(self) -> List[QueueItem]:
        return self.queue.snapshot()

    def subscribe(self, observer: Callable[[List[QueueItem]], None]) -> Callable[[], None]:
        return self.queue.subscribe(observer)

    def on_insufficient_balance(self, listener: Callable[[InsufficientBalance], None]) -> None:
        self.runner.on_insufficient_balance(listener)

    async def wait_idle(self) -> None:
        await self.runner.wait_idle()

    async def close(self) -> None:
        await self.runner.close()


@asynccontextmanager
async def connect(
    session: Session,
    base_url: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    prober: Optional[Prober] = None,
    tick_s: Optional[float] = None,
) -> AsyncIterator[Uploader]:
    """Open the remote clients and yield an Uploader bound to them.

    In-flight jobs are cancelled when the block exits.
    """
    async with AsyncExitStack() as stack:
        quota = await stack.enter_async_context(
            QuotaClient(base_url=base_url, transport=transport)
        )
        transcription = await stack.enter_async_context(
            TranscriptionClient(base_url=base_url, transport=transport)
        )
        uploader = Uploader(session, quota, transcription, prober=prober, tick_s=tick_s)
        try:
            yield uploader
        finally:
            await uploader.close()
