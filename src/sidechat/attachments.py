"""Attachment lifecycle and background uploads.

An attachment moves ``pending -> uploading -> (uploaded | failed)`` and never
leaves a terminal state. Uploads run as background tasks; senders poll with
``wait_until_ready`` and get a tri-state answer instead of an exception, so
"still uploading" and "permanently failed" stay distinguishable.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import hashlib
import json
import logging
from typing import Any
import uuid

from .cancellation import CancellationToken
from .conversations import exchange
from .task_manager import TaskManager
from .transport import Transport

LOGGER = logging.getLogger(__name__)

# The uploader has answered with each naming convention; first match wins.
REMOTE_ID_FIELDS = ("fileID", "file_id", "id")
REMOTE_URL_FIELDS = ("cdnURL", "signedCDNURL", "file_url", "storage_url", "url")

REASON_TIMEOUT = "uploading-timeout"
REASON_FAILED = "upload-failed"


class AttachmentKind(str, Enum):
    IMAGE = "image"
    FILE = "file"
    URL = "url"


class AttachmentStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (AttachmentStatus.UPLOADED, AttachmentStatus.FAILED)


_NEXT_STATUS: dict[AttachmentStatus, frozenset[AttachmentStatus]] = {
    AttachmentStatus.PENDING: frozenset(
        {AttachmentStatus.UPLOADING, AttachmentStatus.FAILED}
    ),
    AttachmentStatus.UPLOADING: frozenset(
        {AttachmentStatus.UPLOADED, AttachmentStatus.FAILED}
    ),
    AttachmentStatus.UPLOADED: frozenset(),
    AttachmentStatus.FAILED: frozenset(),
}


@dataclass
class Attachment:
    """A file, image or URL the user attached to the next message."""

    kind: AttachmentKind
    name: str = ""
    content: bytes | None = None
    mime_type: str = "application/octet-stream"
    source_url: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: AttachmentStatus = AttachmentStatus.PENDING
    remote_id: str | None = None
    remote_url: str | None = None
    error: str = ""

    @classmethod
    def image(cls, name: str, content: bytes, mime_type: str = "image/png") -> Attachment:
        return cls(kind=AttachmentKind.IMAGE, name=name, content=content, mime_type=mime_type)

    @classmethod
    def file(
        cls, name: str, content: bytes, mime_type: str = "application/octet-stream"
    ) -> Attachment:
        return cls(kind=AttachmentKind.FILE, name=name, content=content, mime_type=mime_type)

    @classmethod
    def url(cls, url: str) -> Attachment:
        return cls(kind=AttachmentKind.URL, name=url, source_url=url, mime_type="text/uri-list")

    @property
    def label(self) -> str:
        return self.name or self.source_url or self.id

    @property
    def content_hash(self) -> str:
        payload = self.content if self.content is not None else (self.source_url or "").encode()
        return hashlib.sha256(payload).hexdigest()

    def advance(self, new_status: AttachmentStatus) -> None:
        """Move to ``new_status``; regressions are programming errors."""
        if new_status == self.status:
            return
        if new_status not in _NEXT_STATUS[self.status]:
            raise ValueError(
                f"Attachment {self.label!r} cannot go from {self.status.value} to {new_status.value}"
            )
        self.status = new_status


@dataclass(frozen=True)
class ReadinessResult:
    ready: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> ReadinessResult:
        return cls(ready=True)


def normalize_upload_payload(data: Any) -> tuple[str | None, str | None]:
    """Return ``(remote_id, remote_url)`` from either uploader convention."""
    if not isinstance(data, dict):
        return None, None

    def first(keys: tuple[str, ...]) -> str | None:
        for key in keys:
            value = data.get(key)
            if isinstance(value, (str, int)) and not isinstance(value, bool):
                text = str(value).strip()
                if text:
                    return text
        return None

    return first(REMOTE_ID_FIELDS), first(REMOTE_URL_FIELDS)


class UploadCoordinator:
    """Start uploads as attachments arrive and report when they are usable."""

    def __init__(
        self,
        transport: Transport,
        *,
        upload_path: str = "/api/uploader/v1/file/upload-directly",
        app_name: str = "sidechat",
        max_file_bytes: int | None = None,
        default_max_wait: float = 10.0,
        default_poll_interval: float = 0.2,
    ) -> None:
        self.transport = transport
        self.upload_path = upload_path
        self.app_name = app_name
        self.max_file_bytes = max_file_bytes
        self.default_max_wait = default_max_wait
        self.default_poll_interval = default_poll_interval
        self._pending: dict[str, Attachment] = {}
        self._uploads = TaskManager(label="upload")

    @property
    def pending(self) -> list[Attachment]:
        """Attachments registered for the next message, in attach order."""
        return list(self._pending.values())

    def enqueue(self, attachment: Attachment, conversation_id: str | None = None) -> None:
        """Register ``attachment`` and start uploading it in the background.

        Must be called from inside the running event loop. Returns at once.
        Raises ``ValueError`` for an attachment that already finished.
        """
        attachment.advance(AttachmentStatus.UPLOADING)
        self._pending[attachment.id] = attachment
        LOGGER.info(
            "attachments.upload.start",
            extra={
                "event": "attachments.upload.start",
                "attachment_id": attachment.id,
                "kind": attachment.kind.value,
            },
        )
        self._uploads.spawn(attachment.id, self._upload(attachment, conversation_id))

    async def remove(self, attachment_id: str) -> Attachment | None:
        """Drop an attachment before sending, cancelling its upload if running."""
        attachment = self._pending.pop(attachment_id, None)
        cancelled = await self._uploads.cancel(attachment_id)
        if attachment is not None and cancelled and not attachment.status.terminal:
            attachment.error = "Removed before upload finished"
            attachment.advance(AttachmentStatus.FAILED)
        return attachment

    def clear_pending(self) -> None:
        """Forget attachments that went out with a message."""
        self._pending.clear()

    async def close(self) -> None:
        await self._uploads.cancel_all()
        self._pending.clear()

    async def wait_until_ready(
        self,
        attachment: Attachment,
        max_wait: float | None = None,
        poll_interval: float | None = None,
        token: CancellationToken | None = None,
    ) -> ReadinessResult:
        """Poll ``attachment`` until it is uploaded, failed, or the window closes.

        Raises ``GenerationCancelled`` when ``token`` is signaled at a tick.
        """
        window = self.default_max_wait if max_wait is None else max_wait
        interval = self.default_poll_interval if poll_interval is None else poll_interval
        loop = asyncio.get_running_loop()
        deadline = loop.time() + window

        while True:
            if token is not None:
                token.raise_if_cancelled()
            if attachment.status is AttachmentStatus.UPLOADED:
                return ReadinessResult.ok()
            if attachment.status is AttachmentStatus.FAILED:
                return ReadinessResult(ready=False, reason=REASON_FAILED)
            remaining = deadline - loop.time()
            if remaining <= 0:
                LOGGER.warning(
                    "attachments.wait.timeout",
                    extra={
                        "event": "attachments.wait.timeout",
                        "attachment_id": attachment.id,
                        "max_wait": window,
                    },
                )
                return ReadinessResult(ready=False, reason=REASON_TIMEOUT)
            delay = min(interval, remaining)
            if token is not None:
                await token.sleep(delay)
            else:
                await asyncio.sleep(delay)

    def _form_fields(self, attachment: Attachment, conversation_id: str | None) -> dict[str, str]:
        fields = {
            "conversation_id": conversation_id or "",
            "mime": attachment.mime_type,
            "hash": attachment.content_hash,
            "tasks": json.dumps([]),
            "type": attachment.kind.value,
            "app_name": self.app_name,
        }
        if attachment.kind is AttachmentKind.URL:
            fields["url"] = attachment.source_url or ""
        return fields

    def _fail(self, attachment: Attachment, message: str) -> None:
        attachment.error = message
        attachment.advance(AttachmentStatus.FAILED)
        LOGGER.warning(
            "attachments.upload.failed",
            extra={
                "event": "attachments.upload.failed",
                "attachment_id": attachment.id,
                "error": message,
            },
        )

    async def _upload(self, attachment: Attachment, conversation_id: str | None) -> None:
        if attachment.kind is AttachmentKind.URL:
            if not attachment.source_url:
                self._fail(attachment, "URL attachment has no address")
                return
            files = None
        else:
            if attachment.content is None:
                self._fail(attachment, f"{attachment.label} has no content")
                return
            if self.max_file_bytes is not None and len(attachment.content) > self.max_file_bytes:
                max_mb = self.max_file_bytes / (1024 * 1024)
                self._fail(attachment, f"{attachment.label} too large (max {max_mb:.1f}MB)")
                return
            files = {
                "file": (
                    attachment.name or attachment.id,
                    attachment.content,
                    attachment.mime_type,
                )
            }

        try:
            result = await exchange(
                self.transport,
                "POST",
                self.upload_path,
                fallback="Failed to upload file",
                data=self._form_fields(attachment, conversation_id),
                files=files,
            )
        except asyncio.CancelledError:
            if not attachment.status.terminal:
                attachment.error = "Upload cancelled"
                attachment.advance(AttachmentStatus.FAILED)
            raise
        except Exception as exc:  # noqa: BLE001 - a stuck "uploading" would only surface as a timeout.
            self._fail(attachment, f"Failed to upload {attachment.label}: {exc}")
            return

        if not result.success:
            self._fail(attachment, result.error)
            return

        remote_id, remote_url = normalize_upload_payload(result.data)
        if remote_id is None or remote_url is None:
            self._fail(attachment, "Upload response is missing the file id or URL")
            return

        attachment.remote_id = remote_id
        attachment.remote_url = remote_url
        attachment.advance(AttachmentStatus.UPLOADED)
        LOGGER.info(
            "attachments.upload.ok",
            extra={
                "event": "attachments.upload.ok",
                "attachment_id": attachment.id,
                "remote_id": remote_id,
            },
        )
