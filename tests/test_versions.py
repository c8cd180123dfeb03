"""Tests for the response version store."""

from __future__ import annotations

import unittest

from sidechat.versions import Direction, ResponseVersionStore


class ResponseVersionStoreTests(unittest.TestCase):
    """Validate append-only versions and clamped navigation."""

    def setUp(self) -> None:
        self.store = ResponseVersionStore()

    def test_record_first_version_is_idempotent(self) -> None:
        self.assertTrue(self.store.record_first_version("c1", 1, "first"))
        self.assertFalse(self.store.record_first_version("c1", 1, "again"))

        snapshot = self.store.load_existing("c1", 1)
        self.assertEqual(snapshot.versions, ("first",))
        self.assertEqual(snapshot.current_index, 1)

    def test_append_grows_by_one_and_moves_current(self) -> None:
        self.store.record_first_version("c1", 1, "v1")
        for expected_len in (2, 3, 4):
            before = len(self.store.load_existing("c1", 1).versions)
            snapshot = self.store.append_version("c1", 1, f"v{expected_len}")
            self.assertEqual(len(snapshot.versions), before + 1)
            self.assertEqual(snapshot.current_index, len(snapshot.versions))
            self.assertEqual(snapshot.current, f"v{expected_len}")

    def test_append_creates_missing_slot(self) -> None:
        snapshot = self.store.append_version("c1", 3, "only")
        self.assertEqual(snapshot.versions, ("only",))
        self.assertEqual(snapshot.current_index, 1)

    def test_navigate_previous_at_first_returns_none(self) -> None:
        self.store.record_first_version("c1", 1, "v1")
        self.store.append_version("c1", 1, "v2")
        self.assertEqual(self.store.navigate("c1", 1, Direction.PREVIOUS), "v1")

        self.assertIsNone(self.store.navigate("c1", 1, Direction.PREVIOUS))
        self.assertEqual(self.store.load_existing("c1", 1).current_index, 1)

    def test_navigate_next_at_last_returns_none(self) -> None:
        self.store.record_first_version("c1", 1, "v1")
        self.store.append_version("c1", 1, "v2")

        self.assertIsNone(self.store.navigate("c1", 1, "next"))
        self.assertEqual(self.store.load_existing("c1", 1).current_index, 2)

        self.assertEqual(self.store.navigate("c1", 1, "previous"), "v1")
        self.assertEqual(self.store.navigate("c1", 1, "next"), "v2")

    def test_navigate_unknown_slot_returns_none(self) -> None:
        self.assertIsNone(self.store.navigate("c1", 9, Direction.NEXT))
        self.assertIsNone(self.store.load_existing("c1", 9))

    def test_invalid_direction_raises(self) -> None:
        self.store.record_first_version("c1", 1, "v1")
        with self.assertRaises(ValueError):
            self.store.navigate("c1", 1, "sideways")

    def test_slots_are_scoped_by_conversation(self) -> None:
        self.store.record_first_version("c1", 1, "a")
        self.store.record_first_version("c2", 1, "b")
        self.assertEqual(self.store.load_existing("c1", 1).current, "a")
        self.assertEqual(self.store.load_existing("c2", 1).current, "b")

        self.assertEqual(self.store.discard_conversation("c1"), 1)
        self.assertIsNone(self.store.load_existing("c1", 1))
        self.assertEqual(len(self.store), 1)

        self.store.clear()
        self.assertEqual(len(self.store), 0)

    def test_snapshot_is_detached_from_store(self) -> None:
        self.store.record_first_version("c1", 1, "v1")
        snapshot = self.store.load_existing("c1", 1)
        self.store.append_version("c1", 1, "v2")
        self.assertEqual(snapshot.versions, ("v1",))


if __name__ == "__main__":
    unittest.main()
