"""SingleFlight ゲートのテスト."""

import asyncio
import unittest

from authbridge.core.concurrency import SingleFlight


class TestSingleFlight(unittest.IsolatedAsyncioTestCase):
    """同時呼び出しでも factory が1回だけ実行されることを検証."""

    async def test_concurrent_calls_share_one_future(self):
        """同時呼び出しは同じ Future を受け取る."""
        gate = SingleFlight("test")
        started = []

        async def factory():
            started.append(1)
            await asyncio.sleep(0)
            return "done"

        futures = [gate.run(factory) for _ in range(3)]
        results = await asyncio.gather(*futures)

        self.assertEqual(results, ["done", "done", "done"])
        self.assertEqual(len(started), 1)
        self.assertEqual(gate.calls, 1)
        self.assertEqual(gate.name, "test")
        self.assertTrue(all(future is futures[0] for future in futures))

    async def test_completed_future_is_reused(self):
        gate = SingleFlight()

        async def factory():
            return 1

        first = await gate.run(factory)
        second = await gate.run(factory)

        self.assertEqual((first, second, gate.calls), (1, 1, 1))

    async def test_failure_is_memoized(self):
        """失敗した Future もリセットされず、全呼び出し元に同じ例外が届く."""
        gate = SingleFlight()

        async def factory():
            raise ValueError("init failed")

        errors = []
        for _ in range(2):
            try:
                await gate.run(factory)
            except ValueError as exc:
                errors.append(exc)

        self.assertEqual(len(errors), 2)
        self.assertIs(errors[0], errors[1])
        self.assertEqual(gate.calls, 1)


class TestSingleFlightWithoutLoop(unittest.TestCase):
    def test_run_requires_running_loop(self):
        gate = SingleFlight()

        async def factory():
            return None

        with self.assertRaises(RuntimeError):
            gate.run(factory)
        self.assertFalse(gate.started)
        self.assertIsNone(gate.peek())


if __name__ == "__main__":
    unittest.main()
