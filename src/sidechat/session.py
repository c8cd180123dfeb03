"""Conversation session: the surface a side-panel UI drives.

One ``ConversationSession`` owns the current conversation id, the single
active generation, the reply version cache and the last user message (for
regenerate). Every generation resolves to exactly one ``GenerationOutcome``
and the session is back to idle before ``send``/``regenerate`` return.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, replace
import logging
from typing import Any

from .attachments import REASON_TIMEOUT, Attachment, AttachmentStatus, UploadCoordinator
from .cancellation import CancellationToken
from .config import Config, build_config
from .conversations import preview_title
from .envelope import ApiResult
from .events import (
    GENERATION_OUTCOME,
    GENERATION_STATUS,
    EventBus,
    GenerationOutcomeEvent,
    GenerationStatusEvent,
)
from .exceptions import (
    GenerationCancelled,
    GenerationInProgressError,
    NoRegenerationContextError,
)
from .orchestrator import CompletionRequest, RequestOrchestrator, RequestShape
from .state import (
    ErrorKind,
    GenerationOutcome,
    GenerationStatus,
    GenerationTask,
    OutcomeStatus,
)
from .transport import HttpxTransport, TokenProvider, Transport
from .versions import Direction, ResponseVersionStore, VersionSnapshot

LOGGER = logging.getLogger(__name__)

STOPPED_BY_USER = "Stopped by user"

_FINAL_STATUS = {
    OutcomeStatus.COMPLETED: GenerationStatus.COMPLETED,
    OutcomeStatus.FAILED: GenerationStatus.FAILED,
    OutcomeStatus.CANCELLED: GenerationStatus.CANCELLED,
}


@dataclass(frozen=True)
class UserMessageContext:
    """What the user sent last; replayed verbatim by regenerate.

    ``slot`` is the assistant slot the message is answered in. It is set
    once the request is about to go out.
    """

    text: str
    model: str
    image: Attachment | str | None = None
    attachments: tuple[Attachment, ...] = ()
    slot: int | None = None

    def uploads(self) -> list[Attachment]:
        """Attachments that must be uploaded before the message can go out."""
        pending = list(self.attachments)
        if isinstance(self.image, Attachment):
            pending.insert(0, self.image)
        return pending

    def image_url(self) -> str | None:
        if isinstance(self.image, Attachment):
            return self.image.remote_url
        return self.image or None


class ConversationSession:
    """Send, regenerate, stop and start over within one conversation."""

    def __init__(
        self,
        orchestrator: RequestOrchestrator,
        uploads: UploadCoordinator,
        versions: ResponseVersionStore | None = None,
        *,
        bus: EventBus | None = None,
        attachment_wait: float = 10.0,
        poll_interval: float = 0.2,
        title_max_length: int = 30,
        default_title: str = "New Conversation",
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.uploads = uploads
        self.versions = versions if versions is not None else ResponseVersionStore()
        self.bus = bus if bus is not None else EventBus()
        self.attachment_wait = attachment_wait
        self.poll_interval = poll_interval
        self.title_max_length = title_max_length
        self.default_title = default_title
        self._on_close = on_close
        self._conversation_id: str | None = None
        self._slot_count = 0
        self._last_context: UserMessageContext | None = None
        self._task: GenerationTask | None = None

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def status(self) -> GenerationStatus:
        if self._task is None:
            return GenerationStatus.IDLE
        return self._task.status

    @property
    def slot_count(self) -> int:
        """Assistant replies recorded in this conversation so far."""
        return self._slot_count

    @property
    def last_context(self) -> UserMessageContext | None:
        return self._last_context

    def attach(self, attachment: Attachment) -> Attachment:
        """Start uploading ``attachment`` for the next message."""
        self.uploads.enqueue(attachment, self._conversation_id)
        return attachment

    async def send(
        self,
        text: str,
        model: str,
        image: Attachment | str | None = None,
        attachments: Sequence[Attachment] | None = None,
    ) -> GenerationOutcome:
        """Send a user message and return how the generation ended.

        ``image`` is either an uploaded/uploading image attachment or an
        already hosted image URL.
        """
        self._ensure_idle()
        context = UserMessageContext(
            text=text,
            model=model,
            image=image,
            attachments=tuple(attachments or ()),
        )
        return await self._run(context, regenerate_slot=None)

    async def regenerate(self, slot_index: int) -> GenerationOutcome:
        """Ask again for the reply in ``slot_index`` using the last user message.

        Only the slot that answers the last user message can be regenerated;
        older slots answered prompts the session no longer holds.
        """
        self._ensure_idle()
        if slot_index < 1:
            raise ValueError(f"slot_index must be >= 1, got {slot_index}")
        context = self._last_context
        if context is None or self._conversation_id is None:
            raise NoRegenerationContextError("Nothing to regenerate yet")
        if context.slot != slot_index:
            raise NoRegenerationContextError(
                f"Slot {slot_index} does not answer the last message (slot {context.slot})"
            )
        return await self._run(context, regenerate_slot=slot_index)

    def stop(self, reason: str = STOPPED_BY_USER) -> bool:
        """Signal the active generation to stop. False when nothing is running."""
        task = self._task
        if task is None or not task.active:
            return False
        task.token.cancel(reason)
        LOGGER.info(
            "session.generation.stop_requested",
            extra={
                "event": "session.generation.stop_requested",
                "conversation_id": self._conversation_id,
                "status": task.status.value,
            },
        )
        return True

    def new_conversation(self) -> None:
        """Forget the current conversation; the next send creates a new one.

        Cached reply versions stay in the store under their old id.
        """
        self.stop()
        LOGGER.info(
            "session.conversation.reset",
            extra={
                "event": "session.conversation.reset",
                "conversation_id": self._conversation_id,
            },
        )
        self._conversation_id = None
        self._slot_count = 0
        self._last_context = None

    def navigate(self, slot_index: int, direction: Direction | str) -> str | None:
        if self._conversation_id is None:
            return None
        return self.versions.navigate(self._conversation_id, slot_index, direction)

    def load_existing(self, slot_index: int) -> VersionSnapshot | None:
        if self._conversation_id is None:
            return None
        return self.versions.load_existing(self._conversation_id, slot_index)

    async def close(self) -> None:
        self.stop()
        await self.uploads.close()
        if self._on_close is not None:
            await self._on_close()

    def _ensure_idle(self) -> None:
        if self._task is not None and self._task.active:
            raise GenerationInProgressError(
                f"A generation is already {self._task.status.value}"
            )

    async def _run(
        self, context: UserMessageContext, regenerate_slot: int | None
    ) -> GenerationOutcome:
        initial = (
            GenerationStatus.AWAITING_CONVERSATION
            if self._conversation_id is None
            else GenerationStatus.SENDING
        )
        task = GenerationTask(status=initial)
        self._task = task
        await self._publish_status(initial, GenerationStatus.IDLE)

        try:
            try:
                outcome = await self._generate(task, context, regenerate_slot)
            except GenerationCancelled as exc:
                reason = str(exc) or task.token.reason or STOPPED_BY_USER
                outcome = GenerationOutcome.cancelled(self._conversation_id, reason)
            except Exception as exc:  # noqa: BLE001 - a broken transport still ends the generation.
                LOGGER.exception(
                    "session.generation.crashed",
                    extra={
                        "event": "session.generation.crashed",
                        "conversation_id": self._conversation_id,
                        "error_type": type(exc).__name__,
                    },
                )
                outcome = GenerationOutcome.failed(
                    ErrorKind.TRANSPORT_ERROR,
                    str(exc) or type(exc).__name__,
                    self._conversation_id,
                )
            await self._advance(task, _FINAL_STATUS[outcome.status])
        finally:
            if self._task is task:
                self._task = None

        self._log_outcome(outcome, regenerate_slot is not None)
        await self._publish_status(GenerationStatus.IDLE, task.status)
        await self.bus.publish(
            GENERATION_OUTCOME,
            GenerationOutcomeEvent(
                outcome=outcome, regenerated=regenerate_slot is not None
            ).to_payload(),
            source="session",
        )
        return outcome

    async def _generate(
        self,
        task: GenerationTask,
        context: UserMessageContext,
        regenerate_slot: int | None,
    ) -> GenerationOutcome:
        token = task.token

        not_ready = await self._wait_for_uploads(context.uploads(), token)
        if not_ready is not None:
            return not_ready

        if self._conversation_id is None:
            created = await self.orchestrator.create_conversation(
                preview_title(context.text, self.title_max_length, self.default_title),
                context.model,
                token=token,
            )
            if not created.success:
                kind = (
                    ErrorKind.NO_AUTH
                    if created.error_kind is ErrorKind.NO_AUTH
                    else ErrorKind.CONVERSATION_CREATE_FAILED
                )
                return GenerationOutcome.failed(
                    kind, created.error or "Failed to create conversation"
                )
            self._conversation_id = created.data
            await self._advance(task, GenerationStatus.SENDING)

        conversation_id = self._conversation_id
        image_url = context.image_url()
        shape = (
            RequestShape.IMAGE
            if image_url and not context.attachments
            else RequestShape.MULTI_CONTENT
        )
        request = CompletionRequest(
            conversation_id=conversation_id,
            message=context.text,
            model=context.model,
            shape=shape,
            image_url=image_url,
            attachments=context.attachments,
        )
        if regenerate_slot is None:
            self._last_context = replace(context, slot=self._slot_count + 1)
            self.uploads.clear_pending()

        async def on_retry(attempt: int, delay: float, result: ApiResult) -> None:
            await self._advance(task, GenerationStatus.RETRYING)

        async def on_attempt(attempt: int) -> None:
            if task.status is GenerationStatus.RETRYING:
                await self._advance(task, GenerationStatus.SENDING)

        result = await self.orchestrator.complete(
            request, token=token, on_retry=on_retry, on_attempt=on_attempt
        )
        # A stop that lands after the reply arrived still wins.
        token.raise_if_cancelled()

        if not result.success:
            return GenerationOutcome.failed(
                result.error_kind or ErrorKind.CLIENT_ERROR,
                result.error,
                conversation_id,
            )

        if regenerate_slot is None:
            slot_index = self._slot_count + 1
            self.versions.record_first_version(conversation_id, slot_index, result.text)
            self._slot_count = slot_index
            snapshot = self.versions.load_existing(conversation_id, slot_index)
        else:
            # The slot of a failed send gets its first version here.
            slot_index = regenerate_slot
            snapshot = self.versions.append_version(conversation_id, slot_index, result.text)
            self._slot_count = max(self._slot_count, slot_index)

        return GenerationOutcome(
            status=OutcomeStatus.COMPLETED,
            text=result.text,
            conversation_id=conversation_id,
            slot_index=slot_index,
            version_index=snapshot.current_index if snapshot else None,
            version_count=len(snapshot.versions) if snapshot else None,
        )

    async def _wait_for_uploads(
        self, attachments: list[Attachment], token: CancellationToken
    ) -> GenerationOutcome | None:
        """Return a failed outcome naming the first unusable attachment, or None."""
        # Already-failed uploads abort before waiting on slower ones.
        for attachment in attachments:
            if attachment.status is AttachmentStatus.FAILED:
                return self._upload_failed(attachment)

        for attachment in attachments:
            readiness = await self.uploads.wait_until_ready(
                attachment,
                max_wait=self.attachment_wait,
                poll_interval=self.poll_interval,
                token=token,
            )
            if readiness.ready:
                continue
            if readiness.reason == REASON_TIMEOUT:
                LOGGER.warning(
                    "session.attachment.timeout",
                    extra={
                        "event": "session.attachment.timeout",
                        "attachment_id": attachment.id,
                    },
                )
                return GenerationOutcome.failed(
                    ErrorKind.ATTACHMENT_UPLOAD_TIMEOUT,
                    f'Attachment "{attachment.label}" is still uploading. Please try again.',
                    self._conversation_id,
                )
            return self._upload_failed(attachment)
        return None

    def _upload_failed(self, attachment: Attachment) -> GenerationOutcome:
        LOGGER.warning(
            "session.attachment.failed",
            extra={
                "event": "session.attachment.failed",
                "attachment_id": attachment.id,
                "error": attachment.error,
            },
        )
        detail = f": {attachment.error}" if attachment.error else ""
        return GenerationOutcome.failed(
            ErrorKind.ATTACHMENT_UPLOAD_FAILED,
            f'Attachment "{attachment.label}" failed to upload{detail}',
            self._conversation_id,
        )

    async def _advance(self, task: GenerationTask, status: GenerationStatus) -> None:
        previous = task.status
        if previous == status:
            return
        task.transition_to(status)
        await self._publish_status(status, previous)

    async def _publish_status(
        self, status: GenerationStatus, previous: GenerationStatus
    ) -> None:
        await self.bus.publish(
            GENERATION_STATUS,
            GenerationStatusEvent(
                status=status,
                previous=previous,
                conversation_id=self._conversation_id,
            ).to_payload(),
            source="session",
        )

    def _log_outcome(self, outcome: GenerationOutcome, regenerated: bool) -> None:
        name = f"session.generation.{outcome.status.value}"
        level = logging.WARNING if outcome.status is OutcomeStatus.FAILED else logging.INFO
        LOGGER.log(
            level,
            name,
            extra={
                "event": name,
                "conversation_id": outcome.conversation_id,
                "slot_index": outcome.slot_index,
                "regenerated": regenerated,
                "error_kind": outcome.error_kind.value if outcome.error_kind else None,
            },
        )


def create_session(
    config: Config | Mapping[str, Any] | None = None,
    token_provider: TokenProvider | None = None,
    *,
    transport: Transport | None = None,
    bus: EventBus | None = None,
) -> ConversationSession:
    """Wire a session from configuration.

    ``config`` may be a ``Config`` or a mapping such as the one
    ``load_config`` returns. Without an explicit ``transport`` an
    ``HttpxTransport`` is built from ``config.api`` and closed together
    with the session.
    """
    if not isinstance(config, Config):
        config = build_config(dict(config) if config is not None else None)
    on_close = None
    if transport is None:
        http_transport = HttpxTransport(
            config.api.base_url,
            token_provider,
            timeout=config.api.timeout_seconds,
        )
        transport = http_transport
        on_close = http_transport.aclose

    uploads = UploadCoordinator(
        transport,
        upload_path=config.api.upload_path,
        app_name=config.api.app_name,
        max_file_bytes=config.attachments.max_file_bytes,
        default_max_wait=config.attachments.max_wait_seconds,
        default_poll_interval=config.attachments.poll_interval_seconds,
    )
    return ConversationSession(
        RequestOrchestrator.from_config(transport, config),
        uploads,
        bus=bus,
        attachment_wait=config.attachments.max_wait_seconds,
        poll_interval=config.attachments.poll_interval_seconds,
        title_max_length=config.conversation.title_max_length,
        default_title=config.conversation.default_title,
        on_close=on_close,
    )
