"""Events the session publishes for presenters."""

from .bus import Event, EventBus
from .domain import (
    GENERATION_OUTCOME,
    GENERATION_STATUS,
    GenerationOutcomeEvent,
    GenerationStatusEvent,
)

__all__ = [
    "Event",
    "EventBus",
    "GENERATION_OUTCOME",
    "GENERATION_STATUS",
    "GenerationOutcomeEvent",
    "GenerationStatusEvent",
]
