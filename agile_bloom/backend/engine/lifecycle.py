from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional

from agile_bloom.backend import constants
from agile_bloom.backend.engine.retry import Sleep


logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait {seconds} seconds."


class RateLimiter:
	"""Sliding-window limiter for user submissions.

	Only admitted submissions are counted, so a blocked attempt does not push
	the recovery point further out.
	"""

	def __init__(
		self,
		*,
		max_events: int = constants.RATE_LIMIT_MAX_MESSAGES_PER_WINDOW,
		window_s: float = constants.RATE_LIMIT_WINDOW_SECONDS,
		clock: Callable[[], float] = time.monotonic,
	):
		self.max_events = max(1, max_events)
		self.window_s = window_s
		self._clock = clock
		self._events: Deque[float] = deque()

	def _prune(self, now: float) -> None:
		while self._events and now - self._events[0] >= self.window_s:
			self._events.popleft()

	def try_acquire(self) -> bool:
		now = self._clock()
		self._prune(now)
		if len(self._events) >= self.max_events:
			return False
		self._events.append(now)
		return True

	def retry_after(self) -> float:
		now = self._clock()
		self._prune(now)
		if len(self._events) < self.max_events:
			return 0.0
		return max(0.0, self.window_s - (now - self._events[0]))

	@property
	def message(self) -> str:
		# Quote the remaining wait while blocked, the full window otherwise.
		wait = self.retry_after() or self.window_s
		return RATE_LIMIT_MESSAGE.format(seconds=math.ceil(wait))

	def reset(self) -> None:
		self._events.clear()


def clamp_auto_delay(seconds: float) -> float:
	return float(min(constants.MAX_AUTO_MODE_DELAY_SECONDS, max(constants.MIN_AUTO_MODE_DELAY_SECONDS, seconds)))


class AutoContinueScheduler:
	"""One pending auto-continue timer, keyed by the message it answers.

	Arming again for the same message is a no-op; arming for a new message
	replaces the pending timer.
	"""

	def __init__(self, callback: Callable[[], Awaitable[None]], *, sleep: Sleep = asyncio.sleep):
		self._callback = callback
		self._sleep = sleep
		self._task: Optional[asyncio.Task] = None
		self._running: Optional[asyncio.Task] = None
		self._armed_for: Optional[str] = None
		self.last_fired_for: Optional[str] = None

	@property
	def pending(self) -> bool:
		return self._task is not None and not self._task.done()

	@property
	def armed_for(self) -> Optional[str]:
		return self._armed_for if self.pending else None

	def arm(self, message_id: str, delay_s: float) -> bool:
		if message_id == self.last_fired_for:
			return False
		if self.pending and self._armed_for == message_id:
			return False
		self.cancel()
		self._armed_for = message_id
		self._task = asyncio.get_running_loop().create_task(self._run(message_id, delay_s))
		logger.debug("auto-continue armed for message %s in %.1fs", message_id, delay_s)
		return True

	async def _run(self, message_id: str, delay_s: float) -> None:
		await self._sleep(delay_s)
		self.last_fired_for = message_id
		self._armed_for = None
		# Detach so the turn itself cannot be cancelled by a later cancel().
		self._running, self._task = self._task, None
		logger.info("auto-continue firing for message %s", message_id)
		try:
			await self._callback()
		except Exception:
			logger.exception("auto-continue turn failed")

	async def join(self) -> None:
		"""Wait until neither a timer nor a fired turn is outstanding."""
		while True:
			outstanding = [task for task in (self._task, self._running) if task is not None and not task.done()]
			if not outstanding:
				return
			await asyncio.gather(*outstanding, return_exceptions=True)

	def cancel(self) -> None:
		if self._task is not None and not self._task.done():
			self._task.cancel()
			logger.debug("auto-continue timer cancelled")
		self._task = None
		self._armed_for = None

	def reset(self) -> None:
		self.cancel()
		self.last_fired_for = None
