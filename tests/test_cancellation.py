"""Tests for the cooperative cancellation token."""

from __future__ import annotations

import asyncio
import unittest

from sidechat.cancellation import CancellationToken
from sidechat.exceptions import GenerationCancelled


class CancellationTokenTests(unittest.IsolatedAsyncioTestCase):
    """Validate one-shot signaling and interruptible waits."""

    async def test_fresh_token_is_not_cancelled(self) -> None:
        token = CancellationToken()
        self.assertFalse(token.cancelled)
        self.assertEqual(token.reason, "")
        token.raise_if_cancelled()

    async def test_cancel_keeps_first_reason(self) -> None:
        token = CancellationToken()
        token.cancel()
        token.cancel("second")
        self.assertTrue(token.cancelled)
        self.assertEqual(token.reason, "Stopped by user")

    async def test_raise_if_cancelled_raises_generation_cancelled(self) -> None:
        token = CancellationToken()
        token.cancel("closing panel")
        with self.assertRaises(GenerationCancelled) as ctx:
            token.raise_if_cancelled()
        self.assertEqual(str(ctx.exception), "closing panel")

    async def test_sleep_runs_to_completion_without_signal(self) -> None:
        token = CancellationToken()
        interrupted = await token.sleep(0.01)
        self.assertFalse(interrupted)

    async def test_sleep_is_cut_short_by_cancel(self) -> None:
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, token.cancel)

        started = loop.time()
        interrupted = await token.sleep(30)
        self.assertTrue(interrupted)
        self.assertLess(loop.time() - started, 5)

    async def test_sleep_on_cancelled_token_returns_immediately(self) -> None:
        token = CancellationToken()
        token.cancel()
        self.assertTrue(await token.sleep(30))

    async def test_wait_unblocks_on_cancel(self) -> None:
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        self.assertFalse(waiter.done())
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)


if __name__ == "__main__":
    unittest.main()
