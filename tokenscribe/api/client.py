"""Async HTTP clients for the quota store and transcription functions.

WHY: The queue core needs three remote operations - read the balance,
deduct tokens, transcribe audio - without knowing HTTP details. This
module wraps them behind two small client classes so the core, the CLI
and tests can swap in fakes.

HOW: Uses httpx.AsyncClient for non-blocking HTTP. Both clients are
async context managers - enter to open the connection pool, exit to
close it. The caller's Session is passed to every call and its bearer
token is attached as the Authorization header.

RULES:
- Always use the async context manager (async with QuotaClient() as quota: ...)
- Calls without an authenticated session raise Unauthorized before any I/O
- 401/403 responses raise Unauthorized
- Other non-2xx responses raise QuotaAPIError / TranscriptionAPIError
- Transport failures propagate as httpx.HTTPError; callers classify them
- The transcribe call is made exactly once; there are no retries here
"""

from __future__ import annotations

import base64
import logging

import httpx

from tokenscribe.api.models import DeductResponse, ProfileResponse, TranscribeResponse
from tokenscribe.config import FUNCTIONS_BASE_URL, HTTP_TIMEOUT_S
from tokenscribe.core.errors import Unauthorized
from tokenscribe.core.session import Session

logger = logging.getLogger(__name__)

_AUTH_MESSAGES = ("unauthorized", "no authorization header")


class FunctionsAPIError(Exception):
    """Raised when a remote function returns an error response.

    RULES:
    - Always include status_code and message
    - message is the body's "error" field, or the raw body text
    """

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"API error {status_code}: {message}")


class QuotaAPIError(FunctionsAPIError):
    """Error response from get-profile or deduct-tokens."""

    @property
    def insufficient_tokens(self) -> bool:
        return "insufficient tokens" in self.message.lower()


class TranscriptionAPIError(FunctionsAPIError):
    """Error response from the transcribe function."""


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return resp.text


class _FunctionsClient:
    """Shared connection handling for the edge-function clients."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or FUNCTIONS_BASE_URL).rstrip("/")
        self._timeout = timeout or HTTP_TIMEOUT_S
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._timeout, connect=30.0),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "{} must be used as an async context manager: "
                "async with {}() as client: ...".format(
                    type(self).__name__, type(self).__name__
                )
            )
        return self._client

    async def _post(self, session: Session, path: str, body: dict) -> httpx.Response:
        if not session.is_authenticated:
            raise Unauthorized()
        client = self._ensure_client()
        resp = await client.post(path, json=body, headers=session.auth_headers())
        if resp.status_code in (401, 403):
            raise Unauthorized(_error_message(resp) or "Session expired")
        return resp


class QuotaClient(_FunctionsClient):
    """Client for the remote token balance (get-profile, deduct-tokens)."""

    async def read_balance(self, session: Session) -> int:
        """Return the user's authoritative token balance."""
        resp = await self._post(session, "/get-profile", {})
        if resp.status_code != 200:
            raise QuotaAPIError(resp.status_code, _error_message(resp))
        return ProfileResponse.from_dict(resp.json()).tokens

    async def deduct_tokens(self, session: Session, tokens: int) -> int:
        """Atomically deduct ``tokens`` server-side; returns the new balance.

        RULES:
        - tokens must be positive (the function rejects 0)
        - "Insufficient tokens" comes back as a QuotaAPIError with
          insufficient_tokens set
        """
        if tokens <= 0:
            raise ValueError(f"Token amount must be positive, got {tokens}")

        resp = await self._post(session, "/deduct-tokens", {"tokensToDeduct": tokens})
        if resp.status_code != 200:
            message = _error_message(resp)
            if message.lower() in _AUTH_MESSAGES:
                raise Unauthorized(message)
            raise QuotaAPIError(resp.status_code, message)

        result = DeductResponse.from_dict(resp.json())
        if not result.success:
            raise QuotaAPIError(resp.status_code, "Deduction was not confirmed")
        logger.info("Deducted %d tokens, new balance %d", tokens, result.new_token_balance)
        return result.new_token_balance


class TranscriptionClient(_FunctionsClient):
    """Client for the transcribe function."""

    async def transcribe(
        self,
        session: Session,
        audio: bytes,
        file_name: str,
    ) -> TranscribeResponse:
        """Send one audio payload for transcription.

        HOW: The audio is base64-encoded into a JSON body together with
        the file name, as the function expects.

        RULES:
        - One request per call, no retries
        - code 2 (insufficient tokens) is returned, not raised
        - Non-2xx or a body with an "error" field raises TranscriptionAPIError
        """
        body = {
            "audioData": base64.b64encode(audio).decode("ascii"),
            "fileName": file_name,
        }
        resp = await self._post(session, "/transcribe", body)

        if resp.status_code not in (200, 201):
            message = _error_message(resp)
            if message.lower() in _AUTH_MESSAGES:
                raise Unauthorized(message)
            raise TranscriptionAPIError(resp.status_code, message)

        data = resp.json()
        if "error" in data:
            raise TranscriptionAPIError(resp.status_code, str(data["error"]))
        return TranscribeResponse.from_dict(data)
