"""Tests for the Uploader entry point.

WHY: submit() is what every front end calls. These tests walk whole
batches from files to terminal states against the in-memory fakes:
admission order, per-file rejection, balance fallbacks and the
end-to-end charge.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from fakes import ANONYMOUS, make_file, make_uploader
from tokenscribe.core.errors import (
    ADMISSION,
    InsufficientBalance,
    InvalidInput,
    TransientError,
    Unauthorized,
    Unreadable,
)
from tokenscribe.core.queue import ItemState

# ---------------------------------------------------------------------------
# TestSubmit
# ---------------------------------------------------------------------------


class TestSubmit:
    """Whole batches through submit() and the job runner."""

    def test_accepted_file_completes_and_charges(self):
        uploader, quota, _, _ = make_uploader(balance=100, durations={"clip.mp3": 30.0})

        async def _run():
            outcomes = await uploader.submit([make_file()])
            await uploader.wait_idle()
            return outcomes

        outcomes = asyncio.run(_run())

        assert len(outcomes) == 1
        assert outcomes[0].accepted
        item = uploader.queue.get(outcomes[0].item_id)
        assert item.state == ItemState.COMPLETED
        assert item.tokens_required == 30
        assert item.estimated_processing_seconds == 5
        assert quota.balance == 70
        assert uploader.admission.balance == 70

    def test_file_over_balance_rejected_without_item(self):
        uploader, quota, transcription, _ = make_uploader(balance=100, durations={"long.mp3": 200.0})

        outcomes = asyncio.run(uploader.submit([make_file("long.mp3")]))

        error = outcomes[0].error
        assert isinstance(error, InsufficientBalance)
        assert error.source == ADMISSION
        assert error.shortfall == {"required": 200, "available": 100}
        assert len(uploader.queue) == 0
        assert transcription.calls == []
        assert quota.deductions == []

    def test_batch_admitted_in_submission_order(self):
        uploader, quota, _, _ = make_uploader(
            balance=100, durations={"a.mp3": 60.0, "b.mp3": 60.0}
        )

        async def _run():
            outcomes = await uploader.submit([make_file("a.mp3"), make_file("b.mp3")])
            await uploader.wait_idle()
            return outcomes

        first, second = asyncio.run(_run())

        assert first.accepted
        assert not second.accepted
        assert second.error.shortfall == {"required": 60, "available": 40}
        assert len(uploader.queue) == 1
        assert quota.balance == 40

    def test_shortfall_reflects_in_flight_reservations(self):
        uploader, _, transcription, _ = make_uploader(
            balance=100, durations={"a.mp3": 60.0, "b.mp3": 50.0}
        )

        async def _run():
            transcription.gate = asyncio.Event()
            first = await uploader.submit([make_file("a.mp3")])
            second = await uploader.submit([make_file("b.mp3")])
            transcription.gate.set()
            await uploader.wait_idle()
            return first, second

        first, second = asyncio.run(_run())
        assert first[0].accepted
        assert second[0].error.shortfall == {"required": 50, "available": 40}

    def test_outcomes_keep_submission_order(self):
        uploader, _, _, _ = make_uploader(
            balance=1000, unreadable={"broken.mp3"}
        )
        files = [
            make_file("one.mp3"),
            make_file("notes.txt", content_type="text/plain"),
            make_file("broken.mp3"),
            make_file("two.mp3"),
        ]

        async def _run():
            outcomes = await uploader.submit(files)
            await uploader.wait_idle()
            return outcomes

        outcomes = asyncio.run(_run())

        assert [o.file_name for o in outcomes] == ["one.mp3", "notes.txt", "broken.mp3", "two.mp3"]
        assert outcomes[0].accepted and outcomes[3].accepted
        assert isinstance(outcomes[1].error, InvalidInput)
        assert outcomes[1].error.reason == "Please select an audio file only"
        assert isinstance(outcomes[2].error, Unreadable)
        names = [item.file_name for item in uploader.snapshot()]
        assert names == ["one.mp3", "two.mp3"]

    def test_invalid_files_are_not_probed(self):
        uploader, _, _, prober = make_uploader()
        asyncio.run(uploader.submit([make_file("empty.mp3", data=b"")]))
        assert prober.probed == []

    def test_zero_length_audio_costs_nothing(self):
        uploader, quota, _, _ = make_uploader(balance=0, durations={"silence.wav": 0.0})

        async def _run():
            outcomes = await uploader.submit([make_file("silence.wav", content_type="audio/wav")])
            await uploader.wait_idle()
            return outcomes

        outcomes = asyncio.run(_run())
        assert outcomes[0].accepted
        assert uploader.queue.get(outcomes[0].item_id).state == ItemState.COMPLETED
        assert quota.deductions == []

    def test_batch_notifies_observers_once(self):
        uploader, _, transcription, _ = make_uploader(balance=1000)
        notifications = []
        uploader.subscribe(lambda items: notifications.append([i.state for i in items]))

        async def _run():
            transcription.gate = asyncio.Event()
            await uploader.submit([make_file("a.mp3"), make_file("b.mp3")])
            count = len(notifications)
            transcription.gate.set()
            await uploader.wait_idle()
            return count

        count = asyncio.run(_run())
        assert notifications[0] == [ItemState.ADMITTED, ItemState.ADMITTED]
        assert count == 1


# ---------------------------------------------------------------------------
# TestAuthentication
# ---------------------------------------------------------------------------


class TestAuthentication:
    def test_unauthenticated_submit_raises_before_queue_change(self):
        uploader, quota, _, prober = make_uploader(session=ANONYMOUS)
        with pytest.raises(Unauthorized):
            asyncio.run(uploader.submit([make_file()]))
        assert len(uploader.queue) == 0
        assert prober.probed == []
        assert quota.reads == 0


# ---------------------------------------------------------------------------
# TestBalanceRefresh
# ---------------------------------------------------------------------------


class TestBalanceRefresh:
    """Each submit() re-reads the balance once, with a cached fallback."""

    def test_one_read_per_submit(self):
        uploader, quota, _, _ = make_uploader(balance=1000)

        async def _run():
            await uploader.submit([make_file("a.mp3"), make_file("b.mp3"), make_file("c.mp3")])
            await uploader.wait_idle()

        asyncio.run(_run())
        assert quota.reads == 1

    def test_admission_uses_fresh_balance(self):
        uploader, quota, _, _ = make_uploader(balance=100, durations={"clip.mp3": 50.0})

        async def _run():
            await uploader.refresh_balance()
            quota.balance = 10
            return await uploader.submit([make_file()])

        outcomes = asyncio.run(_run())
        assert outcomes[0].error.shortfall == {"required": 50, "available": 10}

    def test_falls_back_to_cached_balance(self):
        uploader, quota, _, _ = make_uploader(balance=100)

        async def _run():
            await uploader.refresh_balance()
            quota.read_error = httpx.ConnectError("down")
            outcomes = await uploader.submit([make_file()])
            await uploader.wait_idle()
            return outcomes

        outcomes = asyncio.run(_run())
        assert outcomes[0].accepted

    def test_read_overtaken_by_settlement_does_not_readmit_spent_tokens(self):
        uploader, quota, transcription, _ = make_uploader(
            balance=100, durations={"a.mp3": 60.0, "b.mp3": 60.0}
        )

        async def _run():
            transcription.gate = asyncio.Event()
            first = await uploader.submit([make_file("a.mp3")])

            quota.read_gate = asyncio.Event()
            second_task = asyncio.ensure_future(uploader.submit([make_file("b.mp3")]))
            await asyncio.sleep(0.05)

            transcription.gate.set()
            await uploader.wait_idle()
            assert quota.balance == 40

            quota.read_gate.set()
            second = await second_task
            await uploader.wait_idle()
            return first, second

        first, second = asyncio.run(_run())

        assert first[0].accepted
        assert not second[0].accepted
        assert second[0].error.shortfall == {"required": 60, "available": 40}
        assert quota.deductions == [60]
        assert uploader.admission.balance == 40

    def test_no_cached_balance_fails_submit(self):
        uploader, quota, _, _ = make_uploader(balance=100)
        quota.read_error = httpx.ConnectError("down")
        with pytest.raises(TransientError):
            asyncio.run(uploader.submit([make_file()]))
        assert len(uploader.queue) == 0

    def test_all_invalid_skips_balance_read(self):
        uploader, quota, _, _ = make_uploader()
        asyncio.run(uploader.submit([make_file("a.txt", content_type="text/plain")]))
        assert quota.reads == 0


# ---------------------------------------------------------------------------
# TestSignals
# ---------------------------------------------------------------------------


class TestSignals:
    def test_settlement_refusal_reaches_listener(self):
        uploader, quota, _, _ = make_uploader(balance=100, durations={"clip.mp3": 30.0})
        signals = []
        uploader.on_insufficient_balance(signals.append)

        async def _run():
            outcomes = await uploader.submit([make_file()])
            quota.balance = 5
            await uploader.wait_idle()
            return outcomes

        outcomes = asyncio.run(_run())
        item = uploader.queue.get(outcomes[0].item_id)
        assert item.state == ItemState.FAILED
        assert item.error.kind == "insufficient_balance"
        assert signals[0].available == 5
        assert uploader.admission.balance == 5

    def test_remove_pass_through(self):
        uploader, _, transcription, _ = make_uploader()

        async def _run():
            transcription.gate = asyncio.Event()
            outcomes = await uploader.submit([make_file()])
            removed = uploader.remove(outcomes[0].item_id)
            again = uploader.remove(outcomes[0].item_id)
            transcription.gate.set()
            await uploader.wait_idle()
            return removed, again

        assert asyncio.run(_run()) == (True, False)
        assert uploader.snapshot() == []
