"""Authenticated HTTP transport consumed by the orchestration layer.

Every component talks to the backend through the ``Transport`` protocol so
tests (and embedding applications) can substitute their own implementation.
``HttpxTransport`` is the production implementation built on ``httpx``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
import inspect
import json
import logging
from typing import Any, Protocol

import httpx

from .cancellation import CancellationToken
from .exceptions import AuthenticationError, RequestCancelled, TransportError

LOGGER = logging.getLogger(__name__)

TokenProvider = Callable[[], "str | None | Awaitable[str | None]"]

SESSION_EXPIRED_MESSAGE = "Session expired. Please login again."


@dataclass(frozen=True)
class TransportResponse:
    """Raw response returned by a transport call."""

    status_code: int
    reason: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value.split(";")[0].strip().lower()
        return ""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decode the body as JSON, raising ``ValueError`` when it is not."""
        return json.loads(self.text)

    @classmethod
    def from_json(
        cls, status_code: int, payload: Any, reason: str = ""
    ) -> TransportResponse:
        """Build a JSON response; handy for fakes and tests."""
        return cls(
            status_code=status_code,
            reason=reason,
            headers={"content-type": "application/json"},
            body=json.dumps(payload).encode("utf-8"),
        )


class Transport(Protocol):
    """Minimal authenticated-request primitive."""

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        data: Mapping[str, str] | None = None,
        files: Mapping[str, tuple[str, bytes, str]] | None = None,
        token: CancellationToken | None = None,
    ) -> TransportResponse: ...


async def _resolve_token(provider: TokenProvider | None) -> str | None:
    if provider is None:
        return None
    value = provider()
    if inspect.isawaitable(value):
        value = await value
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class HttpxTransport:
    """``Transport`` implementation backed by ``httpx.AsyncClient``.

    A 401 response triggers ``on_auth_expired`` (credential storage is the
    embedding application's concern) and is returned with a synthesized
    "session expired" body so callers surface it like any other auth error.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider | None,
        *,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
        on_auth_expired: Callable[[], Any] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._on_auth_expired = on_auth_expired

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        data: Mapping[str, str] | None = None,
        files: Mapping[str, tuple[str, bytes, str]] | None = None,
        token: CancellationToken | None = None,
    ) -> TransportResponse:
        auth_token = await _resolve_token(self._token_provider)
        if auth_token is None:
            raise AuthenticationError(
                "No authentication token found. Please login first."
            )

        headers = {"accept": "application/json", "Authorization": f"Bearer {auth_token}"}
        url = path if path.startswith("http") else f"{self.base_url}{path}"

        if token is not None and token.cancelled:
            raise RequestCancelled(token.reason)

        call = self._client.request(
            method,
            url,
            headers=headers,
            json=json,
            data=dict(data) if data is not None else None,
            files=dict(files) if files is not None else None,
        )
        try:
            if token is None:
                response = await call
            else:
                response = await self._race(call, token)
        except httpx.HTTPError as exc:
            LOGGER.warning(
                "transport.request.failed",
                extra={
                    "event": "transport.request.failed",
                    "method": method,
                    "path": path,
                    "error_type": type(exc).__name__,
                },
            )
            raise TransportError(f"Request to {path} failed: {exc}") from exc

        if response.status_code == 401:
            await self._handle_auth_expired()
            return TransportResponse.from_json(
                401, {"detail": SESSION_EXPIRED_MESSAGE}, reason="Unauthorized"
            )

        return TransportResponse(
            status_code=response.status_code,
            reason=response.reason_phrase,
            headers=dict(response.headers),
            body=response.content,
        )

    @staticmethod
    async def _race(
        call: Awaitable[httpx.Response], token: CancellationToken
    ) -> httpx.Response:
        """Await ``call`` unless the token fires first."""
        request_task = asyncio.ensure_future(call)
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {request_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_task.cancel()
            if not request_task.done():
                request_task.cancel()
                try:
                    await request_task
                except (asyncio.CancelledError, httpx.HTTPError):
                    pass

        if request_task in done:
            return request_task.result()
        raise RequestCancelled(token.reason)

    async def _handle_auth_expired(self) -> None:
        LOGGER.warning(
            "transport.auth.expired", extra={"event": "transport.auth.expired"}
        )
        if self._on_auth_expired is None:
            return
        result = self._on_auth_expired()
        if inspect.isawaitable(result):
            await result
