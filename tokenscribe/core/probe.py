"""Candidate validation and audio duration probing.

WHY: A file's price depends on its duration, and the duration can only
be learned by actually decoding the container. Files that are not audio,
are empty or too large, or cannot be decoded must be turned away before
they reach the queue, each with its own error.

HOW: validate_candidate() checks MIME type / extension and size without
touching the payload. FFprobeProber writes the payload to a scratch file
and runs ``ffprobe`` on it as an asyncio subprocess, so the event loop
keeps serving other items while a probe runs.

RULES:
- Every probe resolves exactly once: a duration or Unreadable
- The scratch file is deleted on success, failure and cancellation
- A cancelled probe kills its ffprobe process before re-raising
- Zero-length audio is a valid duration (0.0); NaN/inf/negative is not
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from tokenscribe.config import (
    ACCEPTED_MIME_PREFIX,
    AUDIO_EXTENSIONS,
    FFPROBE_BINARY,
    MAX_FILE_BYTES,
)
from tokenscribe.core.errors import InvalidInput, Unreadable

logger = logging.getLogger(__name__)


def validate_candidate(
    file_name: str,
    payload: bytes,
    content_type: Optional[str] = None,
) -> None:
    """Raise InvalidInput if the file is not an acceptable audio upload.

    RULES:
    - content_type, when known, must start with "audio/"
    - without a content_type the extension must be a known audio extension
    - empty payloads and payloads over MAX_FILE_BYTES are rejected
    """
    if content_type:
        if not content_type.lower().startswith(ACCEPTED_MIME_PREFIX):
            raise InvalidInput(file_name, "Please select an audio file only")
    else:
        ext = Path(file_name).suffix.lower()
        if ext not in AUDIO_EXTENSIONS:
            raise InvalidInput(
                file_name,
                "Unsupported file type '{}'. Supported formats: {}".format(
                    ext or "(none)", ", ".join(sorted(AUDIO_EXTENSIONS))
                ),
            )

    if not payload:
        raise InvalidInput(file_name, "File is empty")

    if len(payload) > MAX_FILE_BYTES:
        raise InvalidInput(
            file_name,
            "File is too large (limit {:.0f} MB)".format(MAX_FILE_BYTES / (1024 * 1024)),
        )


@asynccontextmanager
async def _scratch_file(payload: bytes, suffix: str) -> AsyncIterator[Path]:
    """Hold ``payload`` in a temporary file for the duration of the block."""
    fd, name = tempfile.mkstemp(prefix="tokenscribe_probe_", suffix=suffix)
    path = Path(name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        yield path
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            pass


class FFprobeProber:
    """Duration prober backed by the ``ffprobe`` executable.

    Any object with an ``async probe(payload, file_name) -> float`` method
    can stand in for this class (tests use in-memory fakes).
    """

    def __init__(self, binary: Optional[str] = None) -> None:
        self._binary = binary or FFPROBE_BINARY

    async def probe(self, payload: bytes, file_name: str) -> float:
        suffix = Path(file_name).suffix.lower()
        async with _scratch_file(payload, suffix) as path:
            logger.debug("Probing %s (%d bytes)", file_name, len(payload))
            try:
                proc = await asyncio.create_subprocess_exec(
                    self._binary,
                    "-v", "error",
                    "-show_entries", "format=duration",
                    "-of", "default=noprint_wrappers=1:nokey=1",
                    str(path),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                raise Unreadable(file_name, f"Cannot run {self._binary}: {exc}") from exc

            try:
                stdout, stderr = await proc.communicate()
            except asyncio.CancelledError:
                if proc.returncode is None:
                    proc.kill()
                    await proc.wait()
                raise

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", "replace").strip()
            raise Unreadable(file_name, detail or "Cannot read the audio file")

        return parse_duration(stdout.decode("utf-8", "replace"), file_name)


def parse_duration(text: str, file_name: str) -> float:
    """Parse ffprobe's duration output into non-negative float seconds."""
    value = text.strip().splitlines()[0].strip() if text.strip() else ""
    try:
        duration = float(value)
    except ValueError:
        raise Unreadable(file_name, "Audio duration is unknown") from None

    if math.isnan(duration) or math.isinf(duration) or duration < 0:
        raise Unreadable(file_name, "Audio duration is invalid")
    return duration
