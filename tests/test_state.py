"""Tests for the generation state machine and outcome records."""

from __future__ import annotations

import unittest

from sidechat.state import (
    ErrorKind,
    GenerationOutcome,
    GenerationStatus,
    GenerationTask,
    OutcomeStatus,
)


class GenerationTaskTests(unittest.TestCase):
    """Validate allowed and rejected transitions."""

    def test_happy_path_with_retry(self) -> None:
        task = GenerationTask(status=GenerationStatus.AWAITING_CONVERSATION)
        for status in (
            GenerationStatus.SENDING,
            GenerationStatus.RETRYING,
            GenerationStatus.SENDING,
            GenerationStatus.COMPLETED,
        ):
            task.transition_to(status)
        self.assertFalse(task.active)
        self.assertEqual(
            [status.value for status in task.history],
            ["awaiting-conversation", "sending", "retrying", "sending", "completed"],
        )

    def test_each_task_gets_its_own_token(self) -> None:
        first = GenerationTask(status=GenerationStatus.SENDING)
        second = GenerationTask(status=GenerationStatus.SENDING)
        first.token.cancel()
        self.assertFalse(second.token.cancelled)

    def test_terminal_states_are_final(self) -> None:
        task = GenerationTask(status=GenerationStatus.SENDING)
        task.transition_to(GenerationStatus.CANCELLED)
        with self.assertRaises(ValueError):
            task.transition_to(GenerationStatus.SENDING)

    def test_retrying_cannot_complete_without_sending(self) -> None:
        task = GenerationTask(status=GenerationStatus.RETRYING)
        with self.assertRaises(ValueError):
            task.transition_to(GenerationStatus.COMPLETED)

    def test_same_status_is_noop(self) -> None:
        task = GenerationTask(status=GenerationStatus.SENDING)
        task.transition_to(GenerationStatus.SENDING)
        self.assertEqual(task.history, [GenerationStatus.SENDING])

    def test_terminal_flags(self) -> None:
        self.assertTrue(GenerationStatus.IDLE.terminal)
        self.assertTrue(GenerationStatus.FAILED.terminal)
        self.assertFalse(GenerationStatus.RETRYING.terminal)
        self.assertFalse(GenerationStatus.AWAITING_CONVERSATION.terminal)


class GenerationOutcomeTests(unittest.TestCase):
    def test_cancelled_is_distinct_from_failed(self) -> None:
        cancelled = GenerationOutcome.cancelled("c-1")
        failed = GenerationOutcome.failed(ErrorKind.TRANSIENT_SERVER_ERROR, "busy", "c-1")

        self.assertIs(cancelled.status, OutcomeStatus.CANCELLED)
        self.assertIs(cancelled.error_kind, ErrorKind.CANCELLED)
        self.assertEqual(cancelled.error, "Stopped by user")
        self.assertFalse(cancelled.ok)
        self.assertIs(failed.status, OutcomeStatus.FAILED)
        self.assertEqual(failed.error, "busy")


if __name__ == "__main__":
    unittest.main()
