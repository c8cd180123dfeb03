"""In-memory cache of alternative assistant replies per conversation slot."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging

LOGGER = logging.getLogger(__name__)


class Direction(str, Enum):
    PREVIOUS = "previous"
    NEXT = "next"


@dataclass
class VersionSet:
    """Replies for one slot. ``versions`` is never empty once created."""

    versions: list[str]
    current_index: int = 1  # 1-based

    @property
    def current(self) -> str:
        return self.versions[self.current_index - 1]


@dataclass(frozen=True)
class VersionSnapshot:
    versions: tuple[str, ...]
    current_index: int

    @property
    def current(self) -> str:
        return self.versions[self.current_index - 1]


class ResponseVersionStore:
    """Map ``(conversation_id, slot_index)`` to its reply versions.

    Slots count assistant replies only, starting at 1. Regeneration appends;
    nothing is ever overwritten.
    """

    def __init__(self) -> None:
        self._sets: dict[tuple[str, int], VersionSet] = {}

    def __len__(self) -> int:
        return len(self._sets)

    def record_first_version(self, conversation_id: str, slot_index: int, text: str) -> bool:
        """Create the slot with ``text``. Returns False when it already existed."""
        key = (conversation_id, slot_index)
        if key in self._sets:
            return False
        self._sets[key] = VersionSet(versions=[text])
        return True

    def append_version(self, conversation_id: str, slot_index: int, text: str) -> VersionSnapshot:
        """Add a regenerated reply and make it current."""
        key = (conversation_id, slot_index)
        version_set = self._sets.get(key)
        if version_set is None:
            version_set = self._sets[key] = VersionSet(versions=[text])
        else:
            version_set.versions.append(text)
            version_set.current_index = len(version_set.versions)
        LOGGER.debug(
            "versions.appended",
            extra={
                "event": "versions.appended",
                "conversation_id": conversation_id,
                "slot_index": slot_index,
                "count": len(version_set.versions),
            },
        )
        return self._snapshot(version_set)

    def navigate(
        self, conversation_id: str, slot_index: int, direction: Direction | str
    ) -> str | None:
        """Step one version back or forward.

        Returns the text now current, or None when already at the bound (or
        the slot is unknown); the index is left untouched in that case.
        """
        version_set = self._sets.get((conversation_id, slot_index))
        if version_set is None:
            return None
        step = -1 if Direction(direction) is Direction.PREVIOUS else 1
        target = version_set.current_index + step
        if target < 1 or target > len(version_set.versions):
            return None
        version_set.current_index = target
        return version_set.current

    def load_existing(self, conversation_id: str, slot_index: int) -> VersionSnapshot | None:
        version_set = self._sets.get((conversation_id, slot_index))
        if version_set is None:
            return None
        return self._snapshot(version_set)

    def discard_conversation(self, conversation_id: str) -> int:
        """Drop every slot of one conversation; returns how many were removed."""
        keys = [key for key in self._sets if key[0] == conversation_id]
        for key in keys:
            del self._sets[key]
        return len(keys)

    def clear(self) -> None:
        self._sets.clear()

    @staticmethod
    def _snapshot(version_set: VersionSet) -> VersionSnapshot:
        return VersionSnapshot(
            versions=tuple(version_set.versions),
            current_index=version_set.current_index,
        )
