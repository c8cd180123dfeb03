from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..state import GenerationOutcome, GenerationStatus

GENERATION_STATUS = "generation.status"
GENERATION_OUTCOME = "generation.outcome"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GenerationStatusEvent:
    status: GenerationStatus
    previous: GenerationStatus
    conversation_id: str | None
    timestamp: datetime = field(default_factory=_now)

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "previous": self.previous.value,
            "conversation_id": self.conversation_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class GenerationOutcomeEvent:
    outcome: GenerationOutcome
    regenerated: bool
    timestamp: datetime = field(default_factory=_now)

    def to_payload(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "status": self.outcome.status.value,
            "regenerated": self.regenerated,
            "timestamp": self.timestamp.isoformat(),
        }
