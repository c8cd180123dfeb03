"""Domain exception hierarchy for the conversation orchestration layer."""

from __future__ import annotations


class SideChatError(RuntimeError):
    """Base class for all domain-level orchestration errors."""


class TransportError(SideChatError):
    """Raised when a network exchange fails before a usable response arrives."""


class RequestCancelled(TransportError):
    """Raised by a transport when the cancellation token fired mid-request."""


class AuthenticationError(TransportError):
    """Raised when no credentials are available for an authenticated call."""


class GenerationCancelled(SideChatError):
    """Raised inside a generation pipeline once the user asked it to stop."""


class PreconditionViolation(SideChatError):
    """Raised when a caller breaks the session usage contract."""


class GenerationInProgressError(PreconditionViolation):
    """Raised when a generation starts while another is still running."""


class NoRegenerationContextError(PreconditionViolation):
    """Raised when regenerate is requested before anything was sent."""


class ConfigValidationError(SideChatError):
    """Raised when configuration cannot be validated safely."""
