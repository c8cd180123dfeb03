"""Generation state machine, error vocabulary and outcome records."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging

from .cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)


class GenerationStatus(str, Enum):
    """Lifecycle of one generation (send or regenerate)."""

    IDLE = "idle"
    AWAITING_CONVERSATION = "awaiting-conversation"
    SENDING = "sending"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset(
    {
        GenerationStatus.IDLE,
        GenerationStatus.COMPLETED,
        GenerationStatus.FAILED,
        GenerationStatus.CANCELLED,
    }
)

_ALLOWED: dict[GenerationStatus, frozenset[GenerationStatus]] = {
    GenerationStatus.IDLE: frozenset(
        {GenerationStatus.AWAITING_CONVERSATION, GenerationStatus.SENDING}
    ),
    GenerationStatus.AWAITING_CONVERSATION: frozenset(
        {
            GenerationStatus.SENDING,
            GenerationStatus.FAILED,
            GenerationStatus.CANCELLED,
        }
    ),
    GenerationStatus.SENDING: frozenset(
        {
            GenerationStatus.RETRYING,
            GenerationStatus.COMPLETED,
            GenerationStatus.FAILED,
            GenerationStatus.CANCELLED,
        }
    ),
    GenerationStatus.RETRYING: frozenset(
        {
            GenerationStatus.SENDING,
            GenerationStatus.FAILED,
            GenerationStatus.CANCELLED,
        }
    ),
    GenerationStatus.COMPLETED: frozenset(),
    GenerationStatus.FAILED: frozenset(),
    GenerationStatus.CANCELLED: frozenset(),
}


class ErrorKind(str, Enum):
    """Distinct failure signals a presenter can render differently."""

    NO_AUTH = "no-auth"
    ATTACHMENT_UPLOAD_FAILED = "attachment-upload-failed"
    ATTACHMENT_UPLOAD_TIMEOUT = "attachment-upload-timeout"
    CONVERSATION_CREATE_FAILED = "conversation-create-failed"
    TRANSIENT_SERVER_ERROR = "transient-server-error"
    INVALID_RESPONSE_FORMAT = "invalid-response-format"
    CLIENT_ERROR = "client-error"
    TRANSPORT_ERROR = "transport-error"
    CANCELLED = "cancelled"


@dataclass
class GenerationTask:
    """The single active generation owned by a session.

    ``token`` is created with the task and never reused by a later one.
    """

    status: GenerationStatus
    token: CancellationToken = field(default_factory=CancellationToken)
    history: list[GenerationStatus] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.history.append(self.status)

    @property
    def active(self) -> bool:
        return not self.status.terminal

    def transition_to(self, new_status: GenerationStatus) -> None:
        """Move to ``new_status``; illegal moves are programming errors."""
        if new_status == self.status:
            return
        if new_status not in _ALLOWED[self.status]:
            raise ValueError(
                f"Illegal generation transition {self.status.value} -> {new_status.value}"
            )
        LOGGER.debug(
            "generation.transition",
            extra={
                "event": "generation.transition",
                "from_status": self.status.value,
                "to_status": new_status.value,
            },
        )
        self.status = new_status
        self.history.append(new_status)


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class GenerationOutcome:
    """What a presenter receives when a generation resolves.

    Exactly one of ``text`` (completed) or ``error`` (failed/cancelled) is
    meaningful.
    """

    status: OutcomeStatus
    text: str = ""
    error: str = ""
    error_kind: ErrorKind | None = None
    conversation_id: str | None = None
    slot_index: int | None = None
    version_index: int | None = None
    version_count: int | None = None

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.COMPLETED

    @classmethod
    def cancelled(cls, conversation_id: str | None, reason: str = "Stopped by user") -> GenerationOutcome:
        return cls(
            status=OutcomeStatus.CANCELLED,
            error=reason,
            error_kind=ErrorKind.CANCELLED,
            conversation_id=conversation_id,
        )

    @classmethod
    def failed(
        cls, kind: ErrorKind, message: str, conversation_id: str | None = None
    ) -> GenerationOutcome:
        return cls(
            status=OutcomeStatus.FAILED,
            error=message,
            error_kind=kind,
            conversation_id=conversation_id,
        )
