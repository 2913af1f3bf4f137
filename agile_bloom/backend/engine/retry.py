from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from agile_bloom.backend import constants
from agile_bloom.backend.engine.errors import (
	ConfigurationError,
	ProviderExhaustedError,
	QuotaExceededError,
	StructuralValidationError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

_QUOTA_MARKERS = ("quota", "billing", "insufficient_quota", "resource_exhausted")

# Errors that retrying cannot fix.
_NON_RETRYABLE = (ConfigurationError, StructuralValidationError)


def is_quota_error(exc: BaseException) -> bool:
	if isinstance(exc, QuotaExceededError):
		return True
	text = f"{exc.__class__.__name__} {exc}".lower()
	return any(marker in text for marker in _QUOTA_MARKERS)


def backoff_delay(attempt: int, *, base_delay: float, jitter: float, rng: Callable[[], float] = random.random) -> float:
	return base_delay * (2**attempt) + rng() * jitter


async def with_retry(
	fn: Callable[[], Awaitable[T]],
	*,
	max_retries: int = constants.MAX_RETRIES,
	base_delay: float = constants.RETRY_BASE_DELAY_SECONDS,
	jitter: float = constants.RETRY_JITTER_SECONDS,
	sleep: Sleep = asyncio.sleep,
	rng: Callable[[], float] = random.random,
) -> T:
	"""Run ``fn`` with exponential backoff.

	At most ``max_retries + 1`` attempts are made. Quota and billing failures
	abort at once with ``QuotaExceededError``; configuration and structural
	failures propagate unchanged. Exhaustion raises ``ProviderExhaustedError``
	carrying the last underlying message.
	"""
	attempts = max(0, max_retries) + 1
	last_message = "unknown error"
	for attempt in range(attempts):
		try:
			return await fn()
		except _NON_RETRYABLE:
			raise
		except Exception as exc:
			if is_quota_error(exc):
				logger.error("provider quota exceeded: %s", exc)
				if isinstance(exc, QuotaExceededError):
					raise
				raise QuotaExceededError("Failed to call the AI provider, quota exceeded. Please try again later.") from exc
			last_message = str(exc) or exc.__class__.__name__
			logger.warning("provider call failed (attempt %d/%d): %s", attempt + 1, attempts, last_message)
			if attempt == attempts - 1:
				raise ProviderExhaustedError(last_message, attempts=attempts) from exc
			delay = backoff_delay(attempt, base_delay=base_delay, jitter=jitter, rng=rng)
			logger.info("retrying provider call in %.2fs", delay)
			await sleep(delay)
	raise ProviderExhaustedError(last_message, attempts=attempts)
