import asyncio
from unittest import IsolatedAsyncioTestCase, TestCase

from agile_bloom.backend.engine.lifecycle import AutoContinueScheduler, RateLimiter, clamp_auto_delay


class RateLimiterTests(TestCase):
	def test_blocks_after_max_events_and_recovers_after_window(self) -> None:
		now = [0.0]
		limiter = RateLimiter(max_events=3, window_s=10.0, clock=lambda: now[0])

		self.assertEqual([limiter.try_acquire() for _ in range(3)], [True, True, True])
		self.assertFalse(limiter.try_acquire())
		self.assertEqual(limiter.retry_after(), 10.0)

		now[0] = 5.0
		self.assertFalse(limiter.try_acquire())
		self.assertEqual(limiter.retry_after(), 5.0)
		now[0] = 5.5
		self.assertEqual(limiter.message, "Rate limit exceeded. Please wait 5 seconds.")

		now[0] = 10.0
		self.assertTrue(limiter.try_acquire())
		self.assertEqual(limiter.retry_after(), 0.0)

	def test_message_and_reset(self) -> None:
		limiter = RateLimiter(max_events=1, window_s=10.0, clock=lambda: 0.0)
		self.assertEqual(limiter.message, "Rate limit exceeded. Please wait 10 seconds.")
		limiter.try_acquire()
		self.assertFalse(limiter.try_acquire())
		limiter.reset()
		self.assertTrue(limiter.try_acquire())

	def test_auto_delay_is_clamped(self) -> None:
		self.assertEqual(clamp_auto_delay(1), 3.0)
		self.assertEqual(clamp_auto_delay(7), 7.0)
		self.assertEqual(clamp_auto_delay(90), 30.0)


class AutoContinueSchedulerTests(IsolatedAsyncioTestCase):
	async def asyncSetUp(self) -> None:
		self.gate = asyncio.Event()
		self.delays = []
		self.calls = 0

	async def _sleep(self, seconds: float) -> None:
		self.delays.append(seconds)
		await self.gate.wait()

	async def _callback(self) -> None:
		self.calls += 1

	async def test_fires_once_per_message(self) -> None:
		scheduler = AutoContinueScheduler(self._callback, sleep=self._sleep)

		self.assertTrue(scheduler.arm("m1", 7.0))
		self.assertFalse(scheduler.arm("m1", 7.0))
		self.assertTrue(scheduler.pending)
		self.assertEqual(scheduler.armed_for, "m1")

		self.gate.set()
		await scheduler.join()

		self.assertEqual(self.calls, 1)
		self.assertEqual(self.delays, [7.0])
		self.assertEqual(scheduler.last_fired_for, "m1")
		self.assertFalse(scheduler.pending)
		self.assertFalse(scheduler.arm("m1", 7.0))

	async def test_rearming_for_a_new_message_replaces_the_timer(self) -> None:
		scheduler = AutoContinueScheduler(self._callback, sleep=self._sleep)
		scheduler.arm("m1", 5.0)
		self.assertTrue(scheduler.arm("m2", 5.0))
		self.assertEqual(scheduler.armed_for, "m2")

		self.gate.set()
		await scheduler.join()

		self.assertEqual(self.calls, 1)
		self.assertEqual(scheduler.last_fired_for, "m2")

	async def test_cancel_prevents_the_turn(self) -> None:
		scheduler = AutoContinueScheduler(self._callback, sleep=self._sleep)
		scheduler.arm("m1", 5.0)
		scheduler.cancel()
		self.gate.set()
		await asyncio.sleep(0)
		await scheduler.join()

		self.assertEqual(self.calls, 0)
		self.assertIsNone(scheduler.armed_for)
		self.assertIsNone(scheduler.last_fired_for)

	async def test_failed_turn_is_logged_and_reset_allows_rearming(self) -> None:
		async def _boom() -> None:
			raise RuntimeError("provider down")

		scheduler = AutoContinueScheduler(_boom, sleep=self._sleep)
		scheduler.arm("m1", 3.0)
		self.gate.set()
		with self.assertLogs("agile_bloom.backend.engine.lifecycle", level="ERROR"):
			await scheduler.join()

		self.assertEqual(scheduler.last_fired_for, "m1")
		scheduler.reset()
		self.assertIsNone(scheduler.last_fired_for)
		self.assertTrue(scheduler.arm("m1", 3.0))
		scheduler.cancel()
