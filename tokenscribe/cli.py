"""Command-line interface for tokenscribe.

WHY: Users need a simple way to transcribe a handful of audio files from
the terminal and see what each one costs. The CLI wires a session from
the environment into an Uploader, renders queue snapshots as status
lines, and saves each transcript next to its source file.

HOW: Uses argparse for the file list and options, then runs the async
flow via asyncio.run(). Status messages go to stderr; the final balance
goes to stdout. A queue observer prints one line whenever an item's
state or whole-percent progress changes.

RULES:
- Positional arguments: one or more audio file paths
- --balance prints the current token balance and exits
- Output naming: {stem}-transcript.txt, numeric suffix for conflicts
- Exit status 1 if any file was rejected or failed, 2 if not signed in
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from tokenscribe.config import load_session
from tokenscribe.core.costs import format_duration
from tokenscribe.core.errors import InsufficientBalance, TokenscribeError, Unauthorized
from tokenscribe.core.queue import ItemState, QueueItem
from tokenscribe.core.uploader import UploadFile, connect


def _status(msg: str) -> None:
    """Print a status message to stderr (stdout stays pipeable)."""
    print(msg, file=sys.stderr, flush=True)


def transcript_text(transcript: Any) -> str:
    """Render an opaque transcript payload as text.

    RULES:
    - str -> as is
    - dict with a "text" or "transcript" string -> that string
    - anything else -> pretty-printed JSON
    """
    if isinstance(transcript, str):
        return transcript
    if isinstance(transcript, dict):
        for key in ("text", "transcript"):
            if isinstance(transcript.get(key), str):
                return transcript[key]
    return json.dumps(transcript, indent=2, ensure_ascii=False)


def _output_path(source: Path, output_dir: Optional[Path]) -> Path:
    directory = output_dir or source.parent
    candidate = directory / "{}-transcript.txt".format(source.stem)
    counter = 2
    while candidate.exists():
        candidate = directory / "{}-transcript-{}.txt".format(source.stem, counter)
        counter += 1
    return candidate


class StatusPrinter:
    """Queue observer that prints a line per visible change."""

    def __init__(self) -> None:
        self._seen: Dict[str, Tuple[ItemState, int]] = {}

    def __call__(self, items: List[QueueItem]) -> None:
        for item in items:
            key = (item.state, int(item.progress))
            if self._seen.get(item.id) == key:
                continue
            self._seen[item.id] = key
            _status(self.describe(item))

    @staticmethod
    def describe(item: QueueItem) -> str:
        head = "[{}] {}".format(item.state.value, item.file_name)
        if item.state is ItemState.RUNNING:
            return "{} {:.0f}% ({:.0f}s elapsed, ~{}s estimated)".format(
                head, item.progress, item.elapsed_seconds, item.estimated_processing_seconds
            )
        if item.state is ItemState.FAILED and item.error is not None:
            return "{}: {}".format(head, item.error.message)
        if item.state is ItemState.ADMITTED:
            return "{} ({}, {} tokens)".format(
                head, format_duration(item.duration_seconds), item.tokens_required
            )
        return head


def _describe_rejection(error: TokenscribeError) -> str:
    if isinstance(error, InsufficientBalance):
        return "not enough tokens ({} required, {} available)".format(
            error.required, error.available
        )
    return str(error)


async def _run(args: argparse.Namespace) -> int:
    session = load_session()
    if not session.is_authenticated:
        _status("Error: not signed in. Set TOKENSCRIBE_BEARER_TOKEN in .env.")
        return 2

    output_dir = Path(args.output_dir) if args.output_dir else None
    if output_dir is not None:
        output_dir.mkdir(parents=True, exist_ok=True)

    async with connect(session) as uploader:
        try:
            balance = await uploader.refresh_balance()
        except Unauthorized as exc:
            _status("Error: {}".format(exc))
            return 2
        except TokenscribeError as exc:
            _status("Error: {}".format(exc))
            return 1

        if args.balance:
            print(balance)
            return 0

        _status("Token balance: {}".format(balance))

        uploads = []
        paths: List[Path] = []
        exit_code = 0
        for raw in args.files:
            path = Path(raw)
            if not path.is_file():
                _status("Error: file not found: {}".format(path))
                exit_code = 1
                continue
            content_type, _ = mimetypes.guess_type(path.name)
            uploads.append(UploadFile(path.name, path.read_bytes(), content_type))
            paths.append(path)

        uploader.on_insufficient_balance(
            lambda err: _status(
                "Not enough tokens: {} remaining. Top up to continue.".format(err.available)
            )
        )
        uploader.subscribe(StatusPrinter())

        outcomes = await uploader.submit(uploads)
        sources: Dict[str, Path] = {
            outcome.item_id: path
            for outcome, path in zip(outcomes, paths)
            if outcome.item_id is not None
        }
        for outcome in outcomes:
            if outcome.error is not None:
                _status("Rejected {}: {}".format(outcome.file_name, _describe_rejection(outcome.error)))
                exit_code = 1

        await uploader.wait_idle()

        for item in uploader.snapshot():
            if item.state is ItemState.COMPLETED:
                out_path = _output_path(sources[item.id], output_dir)
                out_path.write_text(transcript_text(item.result), encoding="utf-8")
                _status("Saved: {}".format(out_path))
            elif item.state is ItemState.FAILED:
                exit_code = 1
                if item.error is not None and item.error.transcript is not None:
                    out_path = _output_path(sources[item.id], output_dir)
                    out_path.write_text(transcript_text(item.error.transcript), encoding="utf-8")
                    _status("Saved unbilled transcript: {}".format(out_path))

        final = uploader.admission.balance
        try:
            final = await uploader.refresh_balance()
        except TokenscribeError as exc:
            _status("Warning: could not refresh balance: {}".format(exc))
        print(final)
        return exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tokenscribe",
        description="Transcribe audio files, paying one token per second of audio.",
    )
    parser.add_argument(
        "files",
        nargs="*",
        help="Audio files to transcribe.",
    )
    parser.add_argument(
        "--balance",
        action="store_true",
        help="Print the current token balance and exit.",
    )
    parser.add_argument(
        "--output-dir",
        default=None,
        help="Directory to save transcripts (default: next to each input file).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for ``tokenscribe`` and ``python -m tokenscribe``.

    RULES:
    - argv=None means use sys.argv (normal CLI invocation)
    - Explicit argv is for testing
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.files and not args.balance:
        parser.error("give at least one audio file, or --balance")
    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
