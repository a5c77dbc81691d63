"""Pydantic response models for the HTTP API.

WHY: The FastAPI endpoints need typed schemas for response serialization
and automatic OpenAPI documentation.

HOW: One model per response shape. Queue items and submission outcomes
are converted from the core dataclasses by the from_* constructors.

RULES:
- All models use Field(description=...) for OpenAPI documentation
- Response models never expose the raw audio payload
- error is only set on failed items / rejected files
"""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, Field

from tokenscribe.core.errors import (
    InsufficientBalance,
    InvalidInput,
    TokenscribeError,
    Unreadable,
)
from tokenscribe.core.queue import ItemError, QueueItem
from tokenscribe.core.uploader import SubmissionOutcome


class ErrorInfo(BaseModel):
    """Structured error attached to a failed item or rejected file."""

    kind: str = Field(description="Error kind, e.g. 'insufficient_balance'.")
    message: str = Field(description="Human-readable error description.")
    required: Optional[int] = Field(
        default=None, description="Tokens required (insufficient balance only)."
    )
    available: Optional[int] = Field(
        default=None, description="Tokens available (insufficient balance only)."
    )
    source: Optional[str] = Field(
        default=None,
        description="'admission' for the client-side check, 'server' for the authoritative one.",
    )
    transcript: Optional[Any] = Field(
        default=None, description="Unbilled transcript, when settlement failed."
    )

    @classmethod
    def from_item_error(cls, error: ItemError) -> ErrorInfo:
        return cls(
            kind=error.kind,
            message=error.message,
            available=error.balance,
            transcript=error.transcript,
        )

    @classmethod
    def from_exception(cls, exc: TokenscribeError) -> ErrorInfo:
        if isinstance(exc, InsufficientBalance):
            return cls(
                kind="insufficient_balance",
                message=str(exc),
                required=exc.required,
                available=exc.available,
                source=exc.source,
            )
        if isinstance(exc, InvalidInput):
            return cls(kind="invalid_input", message=exc.reason)
        if isinstance(exc, Unreadable):
            return cls(kind="unreadable", message=exc.reason)
        return cls(kind="error", message=str(exc))


class QueueItemResponse(BaseModel):
    """One tracked upload."""

    id: str = Field(description="Unique item identifier.")
    file_name: str = Field(description="Original file name.")
    state: str = Field(description="preparing, admitted, running, completed or failed.")
    progress: float = Field(description="Progress percentage (0-100).")
    duration_seconds: float = Field(description="Audio duration in seconds.")
    tokens_required: int = Field(description="Token cost, fixed at admission.")
    estimated_processing_seconds: int = Field(description="Modelled processing time.")
    elapsed_seconds: float = Field(description="Processing time so far.")
    created_at: float = Field(description="Creation timestamp (Unix epoch seconds).")
    result: Optional[Any] = Field(default=None, description="Transcript, only when completed.")
    error: Optional[ErrorInfo] = Field(default=None, description="Error, only when failed.")

    @classmethod
    def from_item(cls, item: QueueItem) -> QueueItemResponse:
        return cls(
            id=item.id,
            file_name=item.file_name,
            state=item.state.value,
            progress=item.progress,
            duration_seconds=item.duration_seconds,
            tokens_required=item.tokens_required,
            estimated_processing_seconds=item.estimated_processing_seconds,
            elapsed_seconds=round(item.elapsed_seconds, 3),
            created_at=item.created_at,
            result=item.result,
            error=ErrorInfo.from_item_error(item.error) if item.error else None,
        )


class SubmissionOutcomeResponse(BaseModel):
    """Per-file outcome of a submission."""

    file_name: str = Field(description="Submitted file name.")
    accepted: bool = Field(description="Whether the file entered the queue.")
    item_id: Optional[str] = Field(default=None, description="Queue item id when accepted.")
    error: Optional[ErrorInfo] = Field(default=None, description="Why the file was rejected.")

    @classmethod
    def from_outcome(cls, outcome: SubmissionOutcome) -> SubmissionOutcomeResponse:
        return cls(
            file_name=outcome.file_name,
            accepted=outcome.accepted,
            item_id=outcome.item_id,
            error=ErrorInfo.from_exception(outcome.error) if outcome.error else None,
        )


class SubmissionResponse(BaseModel):
    """Response to POST /uploads."""

    outcomes: List[SubmissionOutcomeResponse] = Field(description="One outcome per file, in order.")


class BalanceResponse(BaseModel):
    """Token balance as seen by the queue."""

    tokens: int = Field(description="Authoritative remaining tokens.")
    reserved: int = Field(description="Tokens reserved by admitted, unsettled items.")
    available: int = Field(description="Tokens available for new admissions.")


class ErrorResponse(BaseModel):
    """Standard error response body."""

    detail: str = Field(description="Human-readable error description.")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service health status.", json_schema_extra={"example": "ok"})
    version: str = Field(description="API version string.", json_schema_extra={"example": "0.1.0"})
