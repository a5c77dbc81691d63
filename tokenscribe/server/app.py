"""FastAPI application exposing the upload queue over HTTP.

WHY: Browser front ends and scripts need to submit audio, watch the
queue and remove items without embedding Python. FastAPI provides
request parsing, OpenAPI docs and an event loop shared with the queue.

HOW: The lifespan opens one Uploader for the session configured in the
environment and stores it on app.state. Endpoints reach it through the
get_uploader dependency (overridable in tests). Submitted files are
read into memory and handed to Uploader.submit(); jobs then run as
tasks on the server's event loop.

RULES:
- No session -> 401 on every queue endpoint
- Per-file rejections are part of a 201 response, not HTTP errors
- Unreachable quota store during submit/balance -> 503
- DELETE of an unknown id -> 404
- At most MAX_FILE_BYTES + 1 bytes of each file are read; anything longer
  is rejected as too large by validation without being buffered whole
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated, List

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import Response

from tokenscribe import __version__
from tokenscribe.config import MAX_FILE_BYTES, load_session
from tokenscribe.core.errors import TransientError, Unauthorized
from tokenscribe.core.uploader import UploadFile as SubmittedFile
from tokenscribe.core.uploader import Uploader, connect
from tokenscribe.server.models import (
    BalanceResponse,
    ErrorResponse,
    HealthResponse,
    QueueItemResponse,
    SubmissionOutcomeResponse,
    SubmissionResponse,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the uploader on startup, cancel its jobs on shutdown."""
    async with connect(load_session()) as uploader:
        app.state.uploader = uploader
        yield


app = FastAPI(
    lifespan=lifespan,
    title="Tokenscribe Upload Queue API",
    description=(
        "Submit audio files for transcription, paying one token per second "
        "of audio. Files are validated, priced and admitted against the "
        "token balance, then transcribed in the background."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)


def get_uploader(request: Request) -> Uploader:
    uploader = getattr(request.app.state, "uploader", None)
    if uploader is None:
        raise HTTPException(status_code=503, detail="Upload queue is not running")
    if not uploader.session.is_authenticated:
        raise HTTPException(status_code=401, detail=str(Unauthorized()))
    return uploader


UploaderDep = Annotated[Uploader, Depends(get_uploader)]


# ---------------------------------------------------------------------------
# Endpoints: Uploads
# ---------------------------------------------------------------------------


@app.post(
    "/uploads",
    response_model=SubmissionResponse,
    status_code=201,
    tags=["uploads"],
    summary="Submit audio files",
    description=(
        "Upload one or more audio files. Each file is validated, probed for "
        "its duration and admitted against the token balance. Rejected files "
        "are reported per file; accepted files start transcribing immediately."
    ),
    responses={
        401: {"model": ErrorResponse, "description": "Not signed in"},
        503: {"model": ErrorResponse, "description": "Quota store unreachable"},
    },
)
async def create_uploads(
    uploader: UploaderDep,
    files: Annotated[List[UploadFile], File(description="Audio files to transcribe")],
) -> SubmissionResponse:
    submitted = []
    for upload in files:
        data = await upload.read(MAX_FILE_BYTES + 1)
        submitted.append(SubmittedFile(
            name=upload.filename or "upload",
            data=data,
            content_type=upload.content_type,
        ))

    try:
        outcomes = await uploader.submit(submitted)
    except Unauthorized as exc:
        raise HTTPException(status_code=401, detail=str(exc))
    except TransientError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    return SubmissionResponse(
        outcomes=[SubmissionOutcomeResponse.from_outcome(o) for o in outcomes]
    )


@app.get(
    "/uploads",
    response_model=List[QueueItemResponse],
    tags=["uploads"],
    summary="List the queue",
    description="Snapshot of every tracked upload, oldest first.",
    responses={401: {"model": ErrorResponse, "description": "Not signed in"}},
)
async def list_uploads(uploader: UploaderDep) -> List[QueueItemResponse]:
    return [QueueItemResponse.from_item(item) for item in uploader.snapshot()]


@app.get(
    "/uploads/{item_id}",
    response_model=QueueItemResponse,
    tags=["uploads"],
    summary="Get one upload",
    responses={
        401: {"model": ErrorResponse, "description": "Not signed in"},
        404: {"model": ErrorResponse, "description": "Item not found"},
    },
)
async def get_upload(item_id: str, uploader: UploaderDep) -> QueueItemResponse:
    item = uploader.queue.get(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found: {}".format(item_id))
    return QueueItemResponse.from_item(item)


@app.delete(
    "/uploads/{item_id}",
    status_code=204,
    tags=["uploads"],
    summary="Remove an upload",
    description=(
        "Remove an item from the queue in any state. A transcription that is "
        "already in flight is not cancelled remotely; if it succeeds it is "
        "still charged."
    ),
    responses={
        401: {"model": ErrorResponse, "description": "Not signed in"},
        404: {"model": ErrorResponse, "description": "Item not found"},
    },
)
async def delete_upload(item_id: str, uploader: UploaderDep) -> Response:
    if not uploader.remove(item_id):
        raise HTTPException(status_code=404, detail="Item not found: {}".format(item_id))
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Endpoints: Balance and health
# ---------------------------------------------------------------------------


@app.get(
    "/balance",
    response_model=BalanceResponse,
    tags=["balance"],
    summary="Current token balance",
    description="Re-reads the authoritative balance and reports local reservations.",
    responses={
        401: {"model": ErrorResponse, "description": "Not signed in"},
        503: {"model": ErrorResponse, "description": "Quota store unreachable"},
    },
)
async def get_balance(uploader: UploaderDep) -> BalanceResponse:
    try:
        tokens = await uploader.refresh_balance()
    except Unauthorized as exc:
        raise HTTPException(status_code=401, detail=str(exc))
    except TransientError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return BalanceResponse(
        tokens=tokens,
        reserved=uploader.admission.reserved,
        available=uploader.admission.available,
    )


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["health"],
    summary="Health check",
)
async def health_check() -> HealthResponse:
    return HealthResponse(status="ok", version=__version__)


def run_api():
    """Entry point for the tokenscribe-api console script."""
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
