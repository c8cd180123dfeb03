"""Completion request execution with retry, backoff and cancellation.

The orchestrator performs exactly one logical completion exchange per call.
Multi-content completions retry transient failures (502/503/504, network
errors, malformed bodies) with exponential backoff; image completions go out
once unless ``retry_image_completions`` is enabled. A signaled cancellation
token stops everything at the next checkpoint and surfaces as
``GenerationCancelled``, never as an ordinary failure.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
import inspect
import logging
from typing import Any

from .attachments import Attachment, AttachmentKind, AttachmentStatus
from .cancellation import CancellationToken
from .config import Config
from .conversations import ConversationsAPI
from .envelope import (
    INVALID_FORMAT_MESSAGE,
    ApiResult,
    classify_response,
    decode_body,
    is_decoded,
)
from .exceptions import (
    AuthenticationError,
    GenerationCancelled,
    RequestCancelled,
    TransportError,
)
from .state import ErrorKind
from .transport import Transport

LOGGER = logging.getLogger(__name__)

PauseFn = Callable[[float, "CancellationToken | None"], Awaitable[bool]]
RetryCallback = Callable[[int, float, ApiResult], "Awaitable[None] | None"]
AttemptCallback = Callable[[int], "Awaitable[None] | None"]


async def _notify(result: Awaitable[None] | None) -> None:
    if inspect.isawaitable(result):
        await result


async def cancellable_pause(delay: float, token: CancellationToken | None) -> bool:
    """Sleep ``delay`` seconds; True when the token cut the wait short."""
    if token is None:
        await asyncio.sleep(delay)
        return False
    return await token.sleep(delay)


class RequestShape(str, Enum):
    MULTI_CONTENT = "multi-content"
    IMAGE = "image"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 1.0
    retry_statuses: frozenset[int] = frozenset({502, 503, 504})

    def delay_for(self, retry_index: int) -> float:
        """Delay before retry ``retry_index`` (0-based): base, 2*base, 4*base..."""
        return (2**retry_index) * self.backoff_base


@dataclass(frozen=True)
class CompletionRequest:
    """Everything one completion exchange needs; built by the session."""

    conversation_id: str
    message: str
    model: str
    shape: RequestShape = RequestShape.MULTI_CONTENT
    image_url: str | None = None
    attachments: tuple[Attachment, ...] = ()


def build_multi_content(
    message: str,
    attachments: Sequence[Attachment] = (),
    image_url: str | None = None,
) -> list[dict[str, Any]]:
    """Text part first, then one part per uploaded attachment."""
    parts: list[dict[str, Any]] = [{"type": "text", "text": message}]
    if image_url:
        parts.append({"type": "image", "image_url": image_url})
    for attachment in attachments:
        if attachment.status is not AttachmentStatus.UPLOADED:
            raise ValueError(f"Attachment {attachment.label!r} is not uploaded")
        if attachment.kind is AttachmentKind.IMAGE:
            parts.append(
                {
                    "type": "image",
                    "file_id": attachment.remote_id,
                    "image_url": attachment.remote_url,
                }
            )
        elif attachment.kind is AttachmentKind.FILE:
            parts.append(
                {
                    "type": "file",
                    "file_id": attachment.remote_id,
                    "file_url": attachment.remote_url,
                    "name": attachment.name,
                }
            )
        else:
            parts.append(
                {
                    "type": "url",
                    "url": attachment.source_url,
                    "file_id": attachment.remote_id,
                }
            )
    return parts


def extract_reply_text(data: Any) -> str | None:
    """Find the assistant text in a completion payload."""
    if isinstance(data, str):
        return data.strip() or None
    if not isinstance(data, dict):
        return None

    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        first = choices[0]
        message = first.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str) and content.strip():
                return content
        for key in ("text", "content"):
            value = first.get(key)
            if isinstance(value, str) and value.strip():
                return value

    for key in ("content", "text", "answer"):
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


class RequestOrchestrator:
    """Execute conversation creation and completion exchanges."""

    def __init__(
        self,
        transport: Transport,
        *,
        retry: RetryPolicy | None = None,
        completions_path: str = "/api/chat/v1/completions",
        image_completion_path: str = "/api/chat/send",
        conversations_path: str = "/api/conversations",
        source: str = "chat",
        retry_image_completions: bool = False,
        pause: PauseFn = cancellable_pause,
    ) -> None:
        self.transport = transport
        self.retry = retry or RetryPolicy()
        self.completions_path = completions_path
        self.image_completion_path = image_completion_path
        self.source = source
        self.retry_image_completions = retry_image_completions
        self.conversations = ConversationsAPI(transport, conversations_path)
        self._pause = pause

    @classmethod
    def from_config(cls, transport: Transport, config: Config, **kwargs: Any) -> RequestOrchestrator:
        return cls(
            transport,
            retry=RetryPolicy(
                max_attempts=config.retry.max_attempts,
                backoff_base=config.retry.backoff_base_seconds,
                retry_statuses=frozenset(config.retry.retry_statuses),
            ),
            completions_path=config.api.completions_path,
            image_completion_path=config.api.image_completion_path,
            conversations_path=config.api.conversations_path,
            source=config.api.source,
            retry_image_completions=config.retry.retry_image_completions,
            **kwargs,
        )

    async def create_conversation(
        self, title: str, model: str, token: CancellationToken | None = None
    ) -> ApiResult:
        """Create a conversation; ``data`` holds the new identifier on success."""
        try:
            return await self.conversations.create(title, model, token=token)
        except RequestCancelled as exc:
            raise GenerationCancelled(str(exc) or "Stopped by user") from exc

    async def complete(
        self,
        request: CompletionRequest,
        token: CancellationToken | None = None,
        on_retry: RetryCallback | None = None,
        on_attempt: AttemptCallback | None = None,
    ) -> ApiResult:
        """Run one completion exchange in the shape the request names."""
        if request.shape is RequestShape.IMAGE:
            if not request.image_url:
                return ApiResult.failure(ErrorKind.CLIENT_ERROR, "Image URL is required")
            body: dict[str, Any] = {
                "message": request.message,
                "model": request.model,
                "conversation_id": request.conversation_id,
                "stream": False,
                "image_url": request.image_url,
            }
            return await self._execute(
                self.image_completion_path,
                body,
                token=token,
                on_retry=on_retry,
                on_attempt=on_attempt,
                retry=self.retry_image_completions,
                shape=request.shape,
            )

        body = {
            "stream": False,
            "cid": request.conversation_id,
            "model": request.model,
            "filter_search_history": False,
            "from": self.source,
            "chat_models": [],
            "multi_content": build_multi_content(
                request.message, request.attachments, request.image_url
            ),
            "prompt_templates": [],
        }
        return await self._execute(
            self.completions_path,
            body,
            token=token,
            on_retry=on_retry,
            on_attempt=on_attempt,
            retry=True,
            shape=request.shape,
        )

    async def _execute(
        self,
        path: str,
        body: dict[str, Any],
        *,
        token: CancellationToken | None,
        on_retry: RetryCallback | None,
        on_attempt: AttemptCallback | None,
        retry: bool,
        shape: RequestShape,
    ) -> ApiResult:
        max_attempts = self.retry.max_attempts if retry else 1
        last: ApiResult | None = None

        for attempt in range(max_attempts):
            if token is not None and token.cancelled:
                self._log_cancelled(shape, attempt)
                raise GenerationCancelled(token.reason)

            attempt_no = attempt + 1
            if on_attempt is not None:
                await _notify(on_attempt(attempt_no))
            try:
                response = await self.transport.request("POST", path, json=body, token=token)
            except RequestCancelled as exc:
                self._log_cancelled(shape, attempt)
                raise GenerationCancelled(str(exc) or "Stopped by user") from exc
            except AuthenticationError as exc:
                return ApiResult.failure(ErrorKind.NO_AUTH, str(exc), attempts=attempt_no)
            except TransportError as exc:
                last = ApiResult.failure(
                    ErrorKind.TRANSPORT_ERROR,
                    str(exc) or "Failed to get chat completion",
                    attempts=attempt_no,
                )
            else:
                if response.ok and not is_decoded(decode_body(response)):
                    last = ApiResult.failure(
                        ErrorKind.INVALID_RESPONSE_FORMAT,
                        INVALID_FORMAT_MESSAGE,
                        response.status_code,
                        attempts=attempt_no,
                    )
                else:
                    result = classify_response(
                        response, "", transient_statuses=self.retry.retry_statuses
                    )
                    if result.success:
                        return self._success(result, attempt_no, shape)
                    if result.error_kind is not ErrorKind.TRANSIENT_SERVER_ERROR:
                        return self._final_failure(result, attempt_no, shape)
                    last = result

            if attempt_no >= max_attempts:
                break

            delay = self.retry.delay_for(attempt)
            LOGGER.warning(
                "orchestrator.request.retry",
                extra={
                    "event": "orchestrator.request.retry",
                    "shape": shape.value,
                    "attempt": attempt_no,
                    "max_attempts": max_attempts,
                    "delay_seconds": delay,
                    "error_kind": last.error_kind.value if last.error_kind else None,
                    "status_code": last.status_code,
                },
            )
            if on_retry is not None:
                await _notify(on_retry(attempt_no, delay, last))
            if await self._pause(delay, token):
                self._log_cancelled(shape, attempt_no)
                raise GenerationCancelled(token.reason if token else "Stopped by user")

        assert last is not None
        return self._final_failure(last, attempt_no, shape)

    def _success(self, result: ApiResult, attempts: int, shape: RequestShape) -> ApiResult:
        text = extract_reply_text(result.data)
        if text is None:
            return self._final_failure(
                ApiResult.failure(
                    ErrorKind.INVALID_RESPONSE_FORMAT,
                    "No response text found in API response",
                    result.status_code,
                ),
                attempts,
                shape,
            )
        LOGGER.info(
            "orchestrator.request.ok",
            extra={
                "event": "orchestrator.request.ok",
                "shape": shape.value,
                "attempts": attempts,
            },
        )
        return ApiResult(
            success=True,
            data=result.data,
            text=text,
            status_code=result.status_code,
            attempts=attempts,
        )

    @staticmethod
    def _final_failure(result: ApiResult, attempts: int, shape: RequestShape) -> ApiResult:
        LOGGER.warning(
            "orchestrator.request.failed",
            extra={
                "event": "orchestrator.request.failed",
                "shape": shape.value,
                "attempts": attempts,
                "error_kind": result.error_kind.value if result.error_kind else None,
                "status_code": result.status_code,
            },
        )
        return ApiResult.failure(
            result.error_kind or ErrorKind.CLIENT_ERROR,
            result.error,
            result.status_code,
            attempts=attempts,
        )

    @staticmethod
    def _log_cancelled(shape: RequestShape, attempt: int) -> None:
        LOGGER.info(
            "orchestrator.request.cancelled",
            extra={
                "event": "orchestrator.request.cancelled",
                "shape": shape.value,
                "completed_attempts": attempt,
            },
        )
