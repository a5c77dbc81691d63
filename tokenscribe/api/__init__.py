"""Remote function clients - async HTTP interface to quota and transcription.

WHY: The queue core talks to two remote collaborators: the quota store
(balance and deductions) and the transcription service. This package
keeps every HTTP detail behind two client classes.

HOW: Uses httpx.AsyncClient for non-blocking HTTP. Response bodies are
parsed into dataclasses defined in models.py.

RULES:
- All HTTP calls go through QuotaClient / TranscriptionClient
- Authentication is the caller's bearer token, passed per call
"""

from tokenscribe.api.client import (
    FunctionsAPIError,
    QuotaAPIError,
    QuotaClient,
    TranscriptionAPIError,
    TranscriptionClient,
)
from tokenscribe.api.models import DeductResponse, ProfileResponse, TranscribeResponse

__all__ = [
    "DeductResponse",
    "FunctionsAPIError",
    "ProfileResponse",
    "QuotaAPIError",
    "QuotaClient",
    "TranscribeResponse",
    "TranscriptionAPIError",
    "TranscriptionClient",
]
