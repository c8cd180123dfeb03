"""Top-level package for sidechat."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .attachments import Attachment, UploadCoordinator
    from .cancellation import CancellationToken
    from .config import Config, build_config, ensure_config_dir, load_config
    from .events import EventBus
    from .exceptions import (
        AuthenticationError,
        ConfigValidationError,
        GenerationCancelled,
        GenerationInProgressError,
        NoRegenerationContextError,
        RequestCancelled,
        SideChatError,
        TransportError,
    )
    from .orchestrator import RequestOrchestrator
    from .session import ConversationSession, create_session
    from .state import ErrorKind, GenerationOutcome, GenerationStatus
    from .transport import HttpxTransport, Transport, TransportResponse
    from .versions import ResponseVersionStore

_EXPORTS = {
    "Attachment": "attachments",
    "UploadCoordinator": "attachments",
    "CancellationToken": "cancellation",
    "Config": "config",
    "build_config": "config",
    "ensure_config_dir": "config",
    "load_config": "config",
    "EventBus": "events",
    "AuthenticationError": "exceptions",
    "ConfigValidationError": "exceptions",
    "GenerationCancelled": "exceptions",
    "GenerationInProgressError": "exceptions",
    "NoRegenerationContextError": "exceptions",
    "RequestCancelled": "exceptions",
    "SideChatError": "exceptions",
    "TransportError": "exceptions",
    "RequestOrchestrator": "orchestrator",
    "ConversationSession": "session",
    "create_session": "session",
    "ErrorKind": "state",
    "GenerationOutcome": "state",
    "GenerationStatus": "state",
    "HttpxTransport": "transport",
    "Transport": "transport",
    "TransportResponse": "transport",
    "ResponseVersionStore": "versions",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import sidechat`` stays cheap (no httpx/pydantic)."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(f".{module_name}", __name__), name)
