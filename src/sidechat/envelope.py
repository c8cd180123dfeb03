"""Helpers for the backend's ``{code, data, msg}`` response envelope."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .state import ErrorKind
from .transport import TransportResponse

INVALID_FORMAT_MESSAGE = "Invalid response format from server"

_MISSING = object()


@dataclass(frozen=True)
class ApiResult:
    """Outcome of one logical backend exchange.

    Expected failures are reported here rather than raised; only
    cancellation and programming errors escape as exceptions.
    """

    success: bool
    data: Any = None
    text: str = ""
    error: str = ""
    error_kind: ErrorKind | None = None
    status_code: int | None = None
    attempts: int = 0

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        status_code: int | None = None,
        attempts: int = 0,
    ) -> ApiResult:
        return cls(
            success=False,
            error=message,
            error_kind=kind,
            status_code=status_code,
            attempts=attempts,
        )


def decode_body(response: TransportResponse) -> Any:
    """Return the decoded JSON body, or ``_MISSING`` when it is not JSON.

    The content type is not trusted: proxies label HTML error pages as JSON
    and the backend sometimes omits the header on valid payloads.
    """
    if not response.body.strip():
        return _MISSING
    try:
        return response.json()
    except ValueError:
        return _MISSING


def is_decoded(payload: Any) -> bool:
    return payload is not _MISSING


def server_message(payload: Any, fallback: str) -> str:
    """Pick the human-readable error the backend put in a payload."""
    if not isinstance(payload, dict):
        return fallback
    detail = payload.get("detail")
    if isinstance(detail, list):
        # Validation errors arrive as a list of {"msg": ...} entries.
        parts = [
            str(item.get("msg") or item.get("message") or item)
            if isinstance(item, dict)
            else str(item)
            for item in detail
        ]
        joined = ", ".join(part for part in parts if part)
        if joined:
            return joined
    for key in ("detail", "message", "msg"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return fallback


def unwrap(payload: Any, require_data: bool = True) -> tuple[bool, Any]:
    """Return ``(True, data)`` for a success envelope, ``(False, None)`` otherwise.

    Success means a numeric ``code`` equal to zero together with non-null
    ``data``. Bulk deletes answer without ``data``; they pass
    ``require_data=False``.
    """
    if not isinstance(payload, dict):
        return False, None
    code = payload.get("code")
    if isinstance(code, bool) or not isinstance(code, (int, float)) or code != 0:
        return False, None
    data = payload.get("data")
    if data is None and require_data:
        return False, None
    return True, data


def synthesized_status_message(response: TransportResponse) -> str:
    """Error text for responses whose body is not a JSON envelope."""
    reason = response.reason or "Service unavailable"
    return f"Server error ({response.status_code}): {reason}"


def classify_response(
    response: TransportResponse,
    fallback: str,
    transient_statuses: frozenset[int] = frozenset({502, 503, 504}),
    require_data: bool = True,
) -> ApiResult:
    """Turn one transport response into an ``ApiResult``.

    Never raises: HTML error pages, negative envelopes and error statuses
    all become failures with the best message available. An empty
    ``fallback`` makes error statuses fall back to "Server error: <reason>".
    """
    payload = decode_body(response)

    if response.status_code == 401:
        return ApiResult.failure(
            ErrorKind.NO_AUTH,
            server_message(payload, fallback or "Unauthorized"),
            response.status_code,
        )

    if not is_decoded(payload):
        if response.ok:
            return ApiResult.failure(
                ErrorKind.INVALID_RESPONSE_FORMAT,
                INVALID_FORMAT_MESSAGE,
                response.status_code,
            )
        kind = (
            ErrorKind.TRANSIENT_SERVER_ERROR
            if response.status_code in transient_statuses
            else ErrorKind.CLIENT_ERROR
        )
        return ApiResult.failure(
            kind, synthesized_status_message(response), response.status_code
        )

    if not response.ok:
        kind = (
            ErrorKind.TRANSIENT_SERVER_ERROR
            if response.status_code in transient_statuses
            else ErrorKind.CLIENT_ERROR
        )
        default = fallback or f"Server error: {response.reason or response.status_code}"
        return ApiResult.failure(
            kind, server_message(payload, default), response.status_code
        )

    success, data = unwrap(payload, require_data)
    if not success:
        return ApiResult.failure(
            ErrorKind.INVALID_RESPONSE_FORMAT,
            INVALID_FORMAT_MESSAGE,
            response.status_code,
        )
    return ApiResult(success=True, data=data, status_code=response.status_code)
