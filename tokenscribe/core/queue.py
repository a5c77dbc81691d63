"""In-memory upload queue with a guarded item state machine.

WHY: The UI needs one ordered, observable list of every file it has
handed over, with each file's lifecycle state and progress. Several
items run at once and the user may remove any of them at any time, so
all mutation goes through one place that enforces the state machine and
tells observers about every change.

HOW: Three components work together:
  ItemState    - enum of lifecycle states
  QueueItem    - dataclass holding one file's cost, state and outcome
  QueueManager - insertion-ordered dict of items, transition() as the
                 only mutator, snapshot()/subscribe() for observers

State machine:
  preparing -> admitted -> running -> {completed | failed}
  running -> running        (progress patch)
  preparing/admitted -> failed
  any -> removed            (remove(), drops the item)

RULES:
- Item IDs are UUID4 hex strings, generated at enqueue, never reused
- progress never decreases while running, is pinned to 100 on completed
  and frozen on failed
- result is only set on completed, error only on failed
- Updates addressed to a removed id are dropped silently (returns None)
- Observers are notified after the mutation is visible to snapshot()
- The manager is not thread-safe; it lives on one asyncio event loop
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

from tokenscribe.core.errors import InvalidTransition

logger = logging.getLogger(__name__)

Observer = Callable[[List["QueueItem"]], None]


class ItemState(str, enum.Enum):
    """Lifecycle states of a queue item.

    HOW: Inherits from str so values serialize cleanly to JSON.
    """

    PREPARING = "preparing"
    ADMITTED = "admitted"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    REMOVED = "removed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({ItemState.COMPLETED, ItemState.FAILED, ItemState.REMOVED})

_ALLOWED: Dict[ItemState, Set[ItemState]] = {
    ItemState.PREPARING: {ItemState.ADMITTED, ItemState.FAILED},
    ItemState.ADMITTED: {ItemState.RUNNING, ItemState.FAILED},
    ItemState.RUNNING: {ItemState.RUNNING, ItemState.COMPLETED, ItemState.FAILED},
    ItemState.COMPLETED: set(),
    ItemState.FAILED: set(),
    ItemState.REMOVED: set(),
}

_PATCHABLE = frozenset({"progress", "result", "error"})


@dataclass
class ItemError:
    """Why an item failed.

    RULES:
    - kind: "transcription_failed", "insufficient_balance",
      "settlement_failed" or "unauthorized"
    - balance: authoritative remaining tokens, when the server reported it
    - transcript: the unbilled transcript on settlement failure
    """

    kind: str
    message: str
    balance: Optional[int] = None
    transcript: Optional[Any] = None


@dataclass
class QueueItem:
    """One audio file tracked by the queue.

    RULES:
    - source_ref is only held until the remote call has been made
    - duration/cost fields are fixed at admission and never recomputed
    - created_at is epoch seconds; started_at/finished_at bracket running
    """

    id: str
    file_name: str
    duration_seconds: float
    tokens_required: int
    estimated_processing_seconds: int
    source_ref: Any = dataclasses.field(default=None, repr=False)
    state: ItemState = ItemState.PREPARING
    progress: float = 0.0
    result: Optional[Any] = None
    error: Optional[ItemError] = None
    created_at: float = dataclasses.field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def elapsed_seconds(self) -> float:
        """Processing time so far (or in total, once finished)."""
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.time()
        return max(0.0, end - self.started_at)


class QueueManager:
    """Owns the ordered collection of queue items.

    WHY: Both the uploader and the job runner change items, and the UI
    reads them. Funnelling every change through transition() keeps the
    state machine and the progress invariants in one place.

    HOW: Items live in a dict (insertion ordered). snapshot() returns
    copies so observers can never mutate the live items. Notifications
    can be grouped with ``with queue.batch(): ...``.
    """

    def __init__(self) -> None:
        self._items: Dict[str, QueueItem] = {}
        self._issued: Set[str] = set()
        self._observers: List[Observer] = []
        self._removal_listeners: List[Callable[[str], None]] = []
        self._batch_depth = 0
        self._dirty = False

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def enqueue(
        self,
        file_name: str,
        duration_seconds: float,
        tokens_required: int,
        estimated_processing_seconds: int,
        source_ref: Any = None,
    ) -> str:
        """Register a new item in PREPARING state and return its id."""
        item_id = uuid.uuid4().hex
        while item_id in self._issued:
            item_id = uuid.uuid4().hex
        self._issued.add(item_id)

        self._items[item_id] = QueueItem(
            id=item_id,
            file_name=file_name,
            duration_seconds=duration_seconds,
            tokens_required=tokens_required,
            estimated_processing_seconds=estimated_processing_seconds,
            source_ref=source_ref,
        )
        logger.info("Queued item %s for file %s (%d tokens)", item_id, file_name, tokens_required)
        self._changed()
        return item_id

    def transition(
        self,
        item_id: str,
        new_state: ItemState,
        patch: Optional[Dict[str, Any]] = None,
    ) -> Optional[QueueItem]:
        """Move an item to ``new_state`` and apply ``patch``.

        RULES:
        - Returns a copy of the updated item, or None if the id is not
          (or no longer) tracked
        - Raises InvalidTransition for an edge the state machine forbids
          or a patch that breaks the progress/result/error invariants
        - Raises TypeError for unknown patch keys
        """
        new_state = ItemState(new_state)
        patch = dict(patch or {})
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise TypeError(f"Cannot patch queue item fields: {sorted(unknown)}")

        item = self._items.get(item_id)
        if item is None:
            logger.debug("Dropping %s update for untracked item %s", new_state.value, item_id)
            return None

        self._check(item, new_state, patch)

        now = time.time()
        if new_state is ItemState.RUNNING and item.started_at is None:
            item.started_at = now
        if "progress" in patch:
            item.progress = float(patch["progress"])
        if new_state is ItemState.COMPLETED:
            item.progress = 100.0
            item.result = patch.get("result")
            item.source_ref = None
        if new_state is ItemState.FAILED:
            item.error = patch["error"]
            item.source_ref = None
        if new_state.is_terminal:
            item.finished_at = now
        item.state = new_state

        self._changed()
        return dataclasses.replace(item)

    def remove(self, item_id: str) -> bool:
        """Drop an item regardless of its state.

        RULES:
        - Returns True if the item was tracked, False otherwise
        - Removal listeners run before observers are notified
        """
        item = self._items.pop(item_id, None)
        if item is None:
            return False

        item.state = ItemState.REMOVED
        item.source_ref = None
        logger.info("Removed item %s (%s)", item_id, item.file_name)

        for listener in list(self._removal_listeners):
            listener(item_id)
        self._changed()
        return True

    def _check(self, item: QueueItem, new_state: ItemState, patch: Dict[str, Any]) -> None:
        current = item.state
        if new_state not in _ALLOWED[current]:
            raise InvalidTransition(item.id, current.value, new_state.value)

        if "progress" in patch:
            progress = float(patch["progress"])
            if new_state is not ItemState.RUNNING:
                raise InvalidTransition(
                    item.id, current.value, new_state.value,
                    "progress can only be patched while running",
                )
            if not 0.0 <= progress <= 100.0:
                raise InvalidTransition(
                    item.id, current.value, new_state.value,
                    f"progress {progress} outside [0, 100]",
                )
            if progress < item.progress:
                raise InvalidTransition(
                    item.id, current.value, new_state.value,
                    f"progress cannot decrease ({item.progress} -> {progress})",
                )

        if "result" in patch and new_state is not ItemState.COMPLETED:
            raise InvalidTransition(
                item.id, current.value, new_state.value, "result is only set on completion"
            )
        if new_state is ItemState.FAILED and patch.get("error") is None:
            raise InvalidTransition(
                item.id, current.value, new_state.value, "failure requires an error"
            )
        if "error" in patch and new_state is not ItemState.FAILED:
            raise InvalidTransition(
                item.id, current.value, new_state.value, "error is only set on failure"
            )

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def get(self, item_id: str) -> Optional[QueueItem]:
        """Return a copy of one item, or None if it is not tracked."""
        item = self._items.get(item_id)
        return dataclasses.replace(item) if item is not None else None

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def snapshot(self) -> List[QueueItem]:
        """Return copies of all tracked items in insertion order."""
        return [dataclasses.replace(item) for item in self._items.values()]

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register ``observer``; returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def on_remove(self, listener: Callable[[str], None]) -> None:
        """Register a callback invoked with the id of every removed item."""
        self._removal_listeners.append(listener)

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Group several mutations into a single observer notification."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self._notify()

    def _changed(self) -> None:
        if self._batch_depth:
            self._dirty = True
            return
        self._notify()

    def _notify(self) -> None:
        self._dirty = False
        if not self._observers:
            return
        items = self.snapshot()
        for observer in list(self._observers):
            try:
                observer(items)
            except Exception:
                logger.exception("Queue observer %r failed", observer)
