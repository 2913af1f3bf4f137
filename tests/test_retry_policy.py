from unittest import IsolatedAsyncioTestCase, TestCase

from agile_bloom.backend.engine.errors import (
	ConfigurationError,
	ProviderExhaustedError,
	QuotaExceededError,
	TransientProviderError,
)
from agile_bloom.backend.engine.retry import backoff_delay, is_quota_error, with_retry


class _Flaky:
	def __init__(self, failures):
		self.failures = list(failures)
		self.calls = 0

	async def __call__(self):
		self.calls += 1
		if self.failures:
			raise self.failures.pop(0)
		return "ok"


class BackoffTests(TestCase):
	def test_delay_doubles_per_attempt_plus_jitter(self) -> None:
		self.assertEqual(backoff_delay(0, base_delay=1.0, jitter=0.5, rng=lambda: 0.0), 1.0)
		self.assertEqual(backoff_delay(2, base_delay=1.0, jitter=0.5, rng=lambda: 1.0), 4.5)

	def test_quota_detection_uses_error_text(self) -> None:
		self.assertTrue(is_quota_error(RuntimeError("429 RESOURCE_EXHAUSTED: try later")))
		self.assertTrue(is_quota_error(QuotaExceededError("over")))
		self.assertFalse(is_quota_error(RuntimeError("connection reset")))


class WithRetryTests(IsolatedAsyncioTestCase):
	async def asyncSetUp(self) -> None:
		self.delays = []

	async def _sleep(self, seconds: float) -> None:
		self.delays.append(seconds)

	async def test_succeeds_after_transient_failures(self) -> None:
		fn = _Flaky([TransientProviderError("bad json"), RuntimeError("timeout")])
		result = await with_retry(fn, max_retries=3, base_delay=1.0, jitter=0.0, sleep=self._sleep)
		self.assertEqual(result, "ok")
		self.assertEqual(fn.calls, 3)
		self.assertEqual(self.delays, [1.0, 2.0])

	async def test_exhaustion_reports_attempts_and_last_error(self) -> None:
		fn = _Flaky([RuntimeError(f"boom {index}") for index in range(10)])
		with self.assertRaises(ProviderExhaustedError) as ctx:
			await with_retry(fn, max_retries=3, base_delay=1.0, jitter=0.0, sleep=self._sleep)
		self.assertEqual(fn.calls, 4)
		self.assertEqual(ctx.exception.attempts, 4)
		self.assertEqual(ctx.exception.last_message, "boom 3")
		self.assertEqual(len(self.delays), 3)

	async def test_quota_failure_aborts_immediately(self) -> None:
		fn = _Flaky([RuntimeError("insufficient_quota for this key")])
		with self.assertRaises(QuotaExceededError):
			await with_retry(fn, max_retries=3, sleep=self._sleep)
		self.assertEqual(fn.calls, 1)
		self.assertEqual(self.delays, [])

	async def test_configuration_errors_are_not_retried(self) -> None:
		fn = _Flaky([ConfigurationError("API key for OpenAI is not set.")])
		with self.assertRaises(ConfigurationError):
			await with_retry(fn, max_retries=3, sleep=self._sleep)
		self.assertEqual(fn.calls, 1)
