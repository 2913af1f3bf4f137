from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from agile_bloom.backend import constants
from agile_bloom.backend.engine import session_io
from agile_bloom.backend.engine.commands import CommandInterpreter
from agile_bloom.backend.engine.config import EngineSettings
from agile_bloom.backend.engine.errors import (
	ConfigurationError,
	EngineBusyError,
	EngineError,
	InvalidTransitionError,
	QuotaExceededError,
)
from agile_bloom.backend.engine.lifecycle import AutoContinueScheduler, RateLimiter, clamp_auto_delay
from agile_bloom.backend.engine.providers import ResponseRouter, find_model
from agile_bloom.backend.engine.retry import Sleep
from agile_bloom.backend.engine.scheduler import BulkResult, DispatchScheduler
from agile_bloom.backend.engine.store import EntityStore
from agile_bloom.backend.engine.types import (
	QUESTION_ADDRESSED,
	QUESTION_STATUSES,
	Attachment,
	DiscussionMessage,
	ModelParameters,
	Persona,
	QuestionStatus,
	StoryStatus,
	TaskStatus,
	TrackedStory,
	TrackedTask,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

QUOTA_LATCHED_MESSAGE = "API quota exceeded. Requests are paused until the quota block is cleared."
USER_CREATOR = "User"


class DiscussionEngine:
	"""One discussion session: store, interpreter, scheduler and timers.

	Only one provider-backed operation runs at a time. Provider failures end
	up as System error messages in the discussion; a quota failure also
	latches the session until ``clear_quota_block`` is called.
	"""

	def __init__(
		self,
		*,
		store: Optional[EntityStore] = None,
		router: Optional[ResponseRouter] = None,
		settings: Optional[EngineSettings] = None,
		sleep: Sleep = asyncio.sleep,
		clock: Callable[[], float] = time.monotonic,
	):
		self.settings = settings or (router.settings if router is not None else EngineSettings())
		self.store = store or EntityStore(memory_capacity=self.settings.memory_capacity)
		self.router = router or ResponseRouter(settings=self.settings, sleep=sleep)
		self.scheduler = DispatchScheduler(self.store, self.router, settings=self.settings, sleep=sleep)
		self.interpreter = CommandInterpreter(self.store)
		self.rate_limiter = RateLimiter(
			max_events=self.settings.rate_limit_max,
			window_s=self.settings.rate_limit_window_s,
			clock=clock,
		)
		self.auto_continue = AutoContinueScheduler(self._auto_continue_turn, sleep=sleep)
		self._busy = False

	@property
	def busy(self) -> bool:
		return self._busy

	# -- configuration -------------------------------------------------------

	def configure(
		self,
		*,
		provider: Optional[str] = None,
		model: Optional[str] = None,
		api_keys: Optional[Dict[str, str]] = None,
		parameters: Optional[Dict[str, Any]] = None,
		num_thoughts: Optional[int] = None,
	) -> None:
		config = self.store.config
		if model is not None:
			info = find_model(model)
			if info is None:
				raise ConfigurationError(f"Model with ID '{model}' not found in supported models list.", code="invalid_model")
			if provider is not None and provider != info.provider:
				raise ConfigurationError(f"Model '{model}' is not served by {provider}.", code="invalid_model")
			config.model = info.id
			config.provider = info.provider
		elif provider is not None:
			raise ConfigurationError("A model must be chosen together with its provider.", code="invalid_model")
		if api_keys:
			config.api_keys.update({name: key for name, key in api_keys.items() if key})
		if parameters is not None:
			config.parameters = ModelParameters(**parameters)
		if num_thoughts is not None:
			config.num_thoughts = max(0, num_thoughts)

	# -- guarded execution ---------------------------------------------------

	def _claim(self) -> None:
		if self._busy:
			raise EngineBusyError()
		if self.store.is_quota_exceeded:
			raise QuotaExceededError(QUOTA_LATCHED_MESSAGE)
		self._busy = True

	async def _guarded(self, failure_prefix: str, operation: Callable[[], Awaitable[T]]) -> Optional[T]:
		"""Run a provider-backed operation under the busy flag.

		Failures become one System error message; ``None`` is returned then.
		"""
		self._claim()
		self.store.set_loading(True)
		try:
			return await operation()
		except QuotaExceededError as exc:
			logger.error("quota exceeded; latching session")
			self.store.set_quota_exceeded(True)
			self.store.add_error_message(f"{failure_prefix}{exc.message}")
		except EngineError as exc:
			logger.warning("dispatch failed: %s", exc.message)
			self.store.add_error_message(f"{failure_prefix}{exc.message}")
		finally:
			self.store.set_loading(False)
			self._busy = False
		return None

	def clear_quota_block(self) -> None:
		self.store.set_quota_exceeded(False)
		logger.info("quota block cleared")

	# -- discussion ----------------------------------------------------------

	async def start(
		self,
		topic: str,
		*,
		roster: Optional[Sequence[str]] = None,
		context: str = "",
	) -> List[DiscussionMessage]:
		if self._busy:
			raise EngineBusyError()
		if not topic or not topic.strip():
			raise InvalidTransitionError("A discussion topic is required.")
		self.auto_continue.reset()
		self.store.clear_session()
		self.store.set_topic(topic)
		names = self.store.set_roster(roster or constants.DEFAULT_ROSTER)
		self.store.context = context or ""
		config = self.store.config
		config.topic = self.store.topic or ""
		config.roster = list(names)
		config.context = self.store.context
		start = len(self.store.messages())
		self.store.add_message(
			constants.ROLE_SYSTEM,
			f'Discussion started on topic: "{self.store.topic}" with experts: {", ".join(names)}.',
			is_command_response=True,
		)
		if self.store.context.strip():
			self.store.add_message(
				constants.ROLE_SYSTEM,
				f"The following context was provided:\n\n---\n{self.store.context}\n---",
				is_command_response=True,
			)
		logger.info("discussion started on %r with %d persona(s)", self.store.topic, len(names))
		await self.submit("/continue")
		return list(self.store.messages()[start:])

	async def submit(
		self,
		text: str,
		attachment: Optional[Attachment] = None,
		*,
		is_auto_continue: bool = False,
	) -> List[DiscussionMessage]:
		"""Handle one user input and return the messages it appended."""
		if self._busy:
			raise EngineBusyError()
		store = self.store
		start = len(store.messages())
		cleaned = text.strip()
		if not cleaned and attachment is None:
			return []
		store.last_action_was_auto_continue = is_auto_continue
		if not is_auto_continue:
			self.auto_continue.cancel()
			self._set_auto_mode_flag(False)
			if not self.rate_limiter.try_acquire():
				store.set_rate_limited(True)
				store.add_error_message(self.rate_limiter.message)
				return list(store.messages()[start:])
			if store.is_rate_limited:
				store.set_rate_limited(False)
		if store.is_quota_exceeded:
			raise QuotaExceededError(QUOTA_LATCHED_MESSAGE)

		intent = self.interpreter.interpret(cleaned)
		if intent.action == "noop" and cleaned.split()[0].lower() == "/clear":
			self.auto_continue.reset()
			return list(store.messages())
		if cleaned or attachment is not None:
			store.add_message(constants.ROLE_USER, cleaned)
		if intent.action == "error":
			store.add_error_message(intent.error_message or "Unable to process the command.")
		elif intent.action == "local":
			store.add_message(constants.ROLE_SYSTEM, intent.ai_instruction_text or "", is_command_response=True)
		elif intent.action in ("single", "round_robin"):

			async def _dispatch() -> None:
				await self.scheduler.run(intent, attachment=attachment)
				await self.scheduler.refresh_narrative_summary()

			await self._guarded("", _dispatch)
		self._maybe_arm_auto_continue()
		return list(store.messages()[start:])

	async def _auto_continue_turn(self) -> None:
		if not self.store.auto_mode_enabled or self._busy:
			return
		await self.submit("/continue", is_auto_continue=True)

	# -- auto mode -----------------------------------------------------------

	def _set_auto_mode_flag(self, enabled: bool) -> None:
		self.store.auto_mode_enabled = enabled
		self.store.config.auto_mode_enabled = enabled

	def set_auto_mode(self, enabled: bool, *, delay_seconds: Optional[float] = None) -> None:
		if delay_seconds is not None:
			self.set_auto_mode_delay(delay_seconds)
		self._set_auto_mode_flag(enabled)
		if enabled:
			self.store.last_action_was_auto_continue = False
			self._maybe_arm_auto_continue()
		else:
			self.auto_continue.cancel()
		logger.info("auto mode %s", "enabled" if enabled else "disabled")

	def set_auto_mode_delay(self, seconds: float) -> float:
		delay = clamp_auto_delay(seconds)
		self.store.auto_mode_delay_seconds = delay
		self.store.config.auto_mode_delay_seconds = delay
		return delay

	def auto_continue_ready(self) -> bool:
		store = self.store
		last = store.last_message()
		return (
			store.auto_mode_enabled
			and not self._busy
			and not store.is_loading
			and last is not None
			and last.persona.name != constants.ROLE_USER
			and last.id != self.auto_continue.last_fired_for
			and not store.last_action_was_auto_continue
		)

	def _maybe_arm_auto_continue(self) -> bool:
		if not self.auto_continue_ready():
			return False
		try:
			asyncio.get_running_loop()
		except RuntimeError:
			logger.debug("no running event loop; auto-continue not armed")
			return False
		last = self.store.last_message()
		return self.auto_continue.arm(last.id, self.store.auto_mode_delay_seconds)

	# -- generated artifacts -------------------------------------------------

	async def refresh_narrative_summary(self) -> Optional[str]:
		return await self._guarded("Failed to update summary: ", self.scheduler.refresh_narrative_summary)

	async def generate_tasks(self) -> List[DiscussionMessage]:
		start = len(self.store.messages())
		if not self.store.topic:
			self.store.add_error_message("Cannot generate tasks without an active discussion topic.")
		else:
			await self._guarded("Failed to generate backlog: ", self.scheduler.generate_tasks_from_context)
		return list(self.store.messages()[start:])

	async def compile_documentation(self, persona_name: str) -> List[DiscussionMessage]:
		start = len(self.store.messages())
		persona = self.store.find_persona(persona_name)
		if not self.store.topic:
			self.store.add_error_message("Cannot compile documentation without an active discussion topic.")
		elif persona is None or not self.store.tasks_for_persona(persona.name, open_only=True):
			self.store.add_error_message(f"No active tasks found for {persona_name} to compile documentation from.")
		else:
			await self._guarded(
				"Failed to compile documentation: ",
				lambda: self.scheduler.compile_documentation(persona.name),
			)
		return list(self.store.messages()[start:])

	# -- questions -----------------------------------------------------------

	async def update_question_status(self, question_id: str, status: QuestionStatus) -> bool:
		if status not in QUESTION_STATUSES:
			raise InvalidTransitionError(f"Unknown question status '{status}'.")
		question = self.store.get_question(question_id)
		if question.status == status:
			return False
		prefix = "Failed to generate story: " if status == QUESTION_ADDRESSED else ""
		changed = await self._guarded(prefix, lambda: self.scheduler.update_question_status(question.id, status))
		if changed is None:
			# The transition is applied before the follow-up call, so a failed call still counts.
			return self.store.get_question(question.id).status == status
		return changed

	async def bulk_update_questions(self, question_ids: Sequence[str], status: QuestionStatus) -> BulkResult:
		if status not in QUESTION_STATUSES:
			raise InvalidTransitionError(f"Unknown question status '{status}'.")
		result = BulkResult()
		await self._guarded("", lambda: self.scheduler.bulk_update_questions(question_ids, status, result))
		for question_id in question_ids:
			if not result.seen(question_id):
				result.failures[question_id] = "not processed"
		return result

	def remove_question(self, question_id: str) -> None:
		self.store.remove_question(question_id)

	def clear_questions(self, status: Optional[QuestionStatus] = None) -> int:
		return self.store.clear_questions(status)

	# -- tasks and stories ---------------------------------------------------

	def add_task(
		self,
		description: str,
		*,
		assigned_persona: Optional[str] = None,
		story_id: Optional[str] = None,
		priority: str = "Medium",
	) -> TrackedTask:
		assignee = None
		if assigned_persona:
			persona = self.store.find_persona(assigned_persona)
			if persona is None:
				raise InvalidTransitionError(f"Persona '{assigned_persona}' not found.")
			assignee = persona.name
		task = self.store.add_task(
			description,
			created_by=USER_CREATOR,
			assigned_persona=assignee,
			story_id=story_id,
			priority=priority,
		)
		if story_id is not None:
			self.scheduler.recompute_story_status(story_id)
		return task

	def update_task(self, task_id: str, **updates: Any) -> TrackedTask:
		assignee = updates.get("assigned_persona")
		if assignee:
			persona = self.store.find_persona(assignee)
			if persona is None:
				raise InvalidTransitionError(f"Persona '{assignee}' not found.")
			updates["assigned_persona"] = persona.name
		return self.scheduler.update_task(task_id, **updates)

	def remove_task(self, task_id: str) -> None:
		story_id = self.store.get_task(task_id).story_id
		self.store.remove_task(task_id)
		if story_id is not None:
			self.scheduler.recompute_story_status(story_id)

	def clear_tasks(self, status: Optional[TaskStatus] = None) -> int:
		affected = {task.story_id for task in self.store.tasks() if task.story_id and (status is None or task.status == status)}
		removed = self.store.clear_tasks(status)
		for story_id in affected:
			self.scheduler.recompute_story_status(story_id)
		return removed

	def add_story(
		self,
		*,
		user_story: str,
		benefit: str,
		acceptance_criteria: Iterable[str] = (),
		priority: str = "Medium",
		sprint_points: Optional[int] = None,
	) -> TrackedStory:
		return self.store.add_story(
			user_story=user_story,
			benefit=benefit,
			acceptance_criteria=list(acceptance_criteria),
			created_by=USER_CREATOR,
			priority=priority,
			sprint_points=sprint_points,
		)

	def update_story(self, story_id: str, **updates: Any) -> TrackedStory:
		return self.store.update_story(story_id, **updates)

	def remove_story(self, story_id: str) -> None:
		self.store.remove_story(story_id)

	def clear_stories(self, status: Optional[StoryStatus] = None) -> int:
		return self.store.clear_stories(status)

	# -- personas ------------------------------------------------------------

	def add_persona(self, persona: Persona) -> Persona:
		return self.store.add_persona(persona)

	def remove_persona(self, name: str) -> None:
		self.store.remove_persona(name)

	def set_roster(self, names: Sequence[str]) -> List[str]:
		roster = self.store.set_roster(names)
		self.store.config.roster = list(roster)
		return roster

	def deselect_persona(self, name: str) -> List[str]:
		roster = self.store.deselect_persona(name)
		self.store.config.roster = list(roster)
		return roster

	# -- context and session I/O ----------------------------------------------

	def set_repository_context(self, text: str, file_count: int) -> None:
		self.store.set_repository_context(text, file_count)
		self.store.add_message(
			constants.ROLE_SYSTEM,
			f"Repository context loaded from {file_count} file(s). It will be included in every prompt until cleared.",
			is_command_response=True,
		)

	def clear_repository_context(self) -> None:
		self.store.clear_repository_context()

	def export_session(self) -> List[Dict[str, object]]:
		return session_io.export_session(self.store)

	def import_session(self, records: Any) -> DiscussionMessage:
		if self._busy:
			raise EngineBusyError()
		message = session_io.import_session(self.store, records)
		self.auto_continue.reset()
		self.rate_limiter.reset()
		return message

	def clear(self) -> None:
		if self._busy:
			raise EngineBusyError()
		self.auto_continue.reset()
		self.store.clear_session()
