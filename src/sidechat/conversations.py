"""Server-side conversation records: create, fetch, list, rename, delete, export."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Any

from .cancellation import CancellationToken
from .envelope import ApiResult, classify_response
from .exceptions import AuthenticationError, RequestCancelled, TransportError
from .state import ErrorKind
from .transport import Transport

LOGGER = logging.getLogger(__name__)

# The backend has shipped each of these at some point.
CONVERSATION_ID_FIELDS = ("id", "conversation_id", "cid", "_id")

_FILENAME_PATTERN = re.compile(r"filename[^;=\n]*=((['\"]).*?\2|[^;\n]*)")


def extract_conversation_id(data: Any) -> str | None:
    """Return the conversation identifier from a create/get payload."""
    if not isinstance(data, dict):
        return None
    for key in CONVERSATION_ID_FIELDS:
        value = data.get(key)
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (str, int)) and str(value).strip():
            return str(value).strip()
    return None


def preview_title(text: str, max_length: int, default: str) -> str:
    """Conversation title from the first message: collapsed, truncated, never empty."""
    collapsed = " ".join(text.split())
    if not collapsed:
        return default
    if len(collapsed) <= max_length:
        return collapsed
    return f"{collapsed[:max_length].rstrip()}..."


async def exchange(
    transport: Transport,
    method: str,
    path: str,
    *,
    fallback: str,
    token: CancellationToken | None = None,
    require_data: bool = True,
    **kwargs: Any,
) -> ApiResult:
    """Run one request without retries and classify the response.

    Transport cancellation is re-raised unchanged; the caller decides what a
    stop means at its level.
    """
    try:
        response = await transport.request(method, path, token=token, **kwargs)
    except RequestCancelled:
        raise
    except TransportError as exc:
        return _transport_failure(exc, fallback)
    return classify_response(response, fallback, require_data=require_data)


def _transport_failure(exc: TransportError, fallback: str) -> ApiResult:
    if isinstance(exc, AuthenticationError):
        return ApiResult.failure(ErrorKind.NO_AUTH, str(exc))
    return ApiResult.failure(ErrorKind.TRANSPORT_ERROR, str(exc) or fallback)


def attachment_filename(content_disposition: str, default: str) -> str:
    """Filename from a ``Content-Disposition`` header, or ``default``."""
    match = _FILENAME_PATTERN.search(content_disposition or "")
    if match is None:
        return default
    filename = match.group(1).strip().strip("\"'")
    return filename or default


@dataclass(frozen=True)
class ConversationExport:
    """Result of an export: a link to fetch later, or the file itself."""

    filename: str
    download_url: str | None = None
    content: bytes | None = None
    content_type: str = ""
    data: Any = None


class ConversationsAPI:
    """Thin client for ``/api/conversations``."""

    def __init__(self, transport: Transport, base_path: str = "/api/conversations") -> None:
        self.transport = transport
        self.base_path = base_path.rstrip("/")

    async def create(
        self, title: str, model: str, token: CancellationToken | None = None
    ) -> ApiResult:
        """Create a conversation; ``data`` is the normalized identifier on success."""
        result = await exchange(
            self.transport,
            "POST",
            self.base_path,
            json={"title": title or "New Conversation", "model": model},
            fallback="Failed to create conversation",
            token=token,
        )
        if not result.success:
            LOGGER.warning(
                "conversations.create.failed",
                extra={
                    "event": "conversations.create.failed",
                    "error_kind": result.error_kind.value if result.error_kind else None,
                    "status_code": result.status_code,
                },
            )
            return result

        conversation_id = extract_conversation_id(result.data)
        if conversation_id is None:
            return ApiResult.failure(
                ErrorKind.INVALID_RESPONSE_FORMAT,
                "Failed to get conversation ID from response",
                result.status_code,
            )
        LOGGER.info(
            "conversations.create.ok",
            extra={"event": "conversations.create.ok", "conversation_id": conversation_id},
        )
        return ApiResult(success=True, data=conversation_id, status_code=result.status_code)

    async def get(self, conversation_id: str) -> ApiResult:
        return await exchange(
            self.transport,
            "GET",
            f"{self.base_path}/{conversation_id}",
            fallback="Failed to get conversation",
        )

    async def list(self) -> ApiResult:
        result = await exchange(
            self.transport, "GET", self.base_path, fallback="Failed to list conversations"
        )
        if result.success and not isinstance(result.data, list):
            return ApiResult.failure(
                ErrorKind.INVALID_RESPONSE_FORMAT,
                "Invalid response format from server",
                result.status_code,
            )
        return result

    async def rename(self, conversation_id: str, title: str) -> ApiResult:
        return await exchange(
            self.transport,
            "PUT",
            f"{self.base_path}/{conversation_id}",
            json={"title": title},
            fallback="Failed to update conversation",
        )

    async def delete(self, conversation_id: str) -> ApiResult:
        return await exchange(
            self.transport,
            "DELETE",
            f"{self.base_path}/{conversation_id}",
            fallback="Failed to delete conversation",
        )

    async def delete_all(self) -> ApiResult:
        return await exchange(
            self.transport,
            "DELETE",
            f"{self.base_path}/all",
            fallback="Failed to delete all conversations",
            require_data=False,
        )

    async def export(
        self, conversation_id: str, token: CancellationToken | None = None
    ) -> ApiResult:
        """Export a conversation; ``data`` is a ``ConversationExport`` on success.

        The backend either answers with an envelope carrying a download link
        or streams the file itself.
        """
        fallback = "Failed to export conversation"
        try:
            response = await self.transport.request(
                "POST",
                f"{self.base_path}/{conversation_id}/export",
                json={},
                token=token,
            )
        except RequestCancelled:
            raise
        except TransportError as exc:
            return _transport_failure(exc, fallback)

        default_name = f"conversation-{conversation_id}.txt"
        if not response.ok or "json" in response.content_type:
            result = classify_response(response, fallback)
            if not result.success:
                LOGGER.warning(
                    "conversations.export.failed",
                    extra={
                        "event": "conversations.export.failed",
                        "conversation_id": conversation_id,
                        "status_code": result.status_code,
                    },
                )
                return result
            data = result.data
            download_url = None
            if isinstance(data, dict):
                download_url = data.get("download_url") or data.get("url") or None
            export = ConversationExport(
                filename=default_name, download_url=download_url, data=data
            )
        else:
            disposition = next(
                (
                    value
                    for key, value in response.headers.items()
                    if key.lower() == "content-disposition"
                ),
                "",
            )
            export = ConversationExport(
                filename=attachment_filename(disposition, default_name),
                content=response.body,
                content_type=response.content_type,
            )

        LOGGER.info(
            "conversations.export.ok",
            extra={
                "event": "conversations.export.ok",
                "conversation_id": conversation_id,
                "download": export.download_url is not None,
            },
        )
        return ApiResult(success=True, data=export, status_code=response.status_code)
