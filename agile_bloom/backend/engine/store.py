from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from agile_bloom.backend import constants
from agile_bloom.backend.engine.errors import EntityNotFoundError, InvalidTransitionError
from agile_bloom.backend.engine.types import (
	DERIVED_STORY_STATUSES,
	QUESTION_STATUSES,
	STORY_BACKLOG,
	STORY_PRIORITIES,
	STORY_STATUSES,
	TASK_PRIORITIES,
	TASK_STATUSES,
	TASK_TODO,
	Citation,
	DiscussionMessage,
	Persona,
	QuestionStatus,
	SessionConfig,
	StoryStatus,
	TaskStatus,
	TrackedQuestion,
	TrackedStory,
	TrackedTask,
)


logger = logging.getLogger(__name__)

Listener = Callable[[str], None]
_Item = TypeVar("_Item", TrackedQuestion, TrackedStory, TrackedTask)

_DEFAULT_BG = "bg-[#333e48]"
_DEFAULT_TEXT = "text-gray-200"

# Fields that may be cleared with None; every other updatable field is required.
_NULLABLE_TASK_FIELDS = frozenset({"assigned_persona", "story_id"})
_NULLABLE_STORY_FIELDS = frozenset({"sprint_points", "origin_question_id"})
_READ_ONLY_FIELDS = frozenset({"id", "timestamp", "created_by"})

DEFAULT_PERSONAS: Dict[str, Persona] = {
	constants.ROLE_SYSTEM: Persona(constants.ROLE_SYSTEM, "⚙️", "System messages and notifications.", _DEFAULT_BG, _DEFAULT_TEXT),
	constants.ROLE_USER: Persona(constants.ROLE_USER, "👤", "The human user guiding the discussion.", "bg-[#c36e26]", _DEFAULT_TEXT),
	constants.ROLE_ENGINEER: Persona(
		constants.ROLE_ENGINEER,
		"👨‍💻",
		"A neat and creative programmer with expertise in Bash, Python, and Ansible.",
		_DEFAULT_BG,
		_DEFAULT_TEXT,
	),
	constants.ROLE_ARTIST: Persona(
		constants.ROLE_ARTIST,
		"🧑‍🎨",
		"A design expert proficient in CSS, JS, and HTML.",
		_DEFAULT_BG,
		_DEFAULT_TEXT,
	),
	constants.ROLE_LINGUIST: Persona(
		constants.ROLE_LINGUIST,
		"🧑‍✒️",
		"A pragmatic devil's advocate with expertise in linguistics, design patterns and the Ruby language.",
		_DEFAULT_BG,
		_DEFAULT_TEXT,
	),
	constants.ROLE_SCRUM_LEADER: Persona(
		constants.ROLE_SCRUM_LEADER,
		"🤔",
		"Manages the product backlog and time-boxing.",
		_DEFAULT_BG,
		_DEFAULT_TEXT,
	),
}


def _now_ms() -> float:
	return float(int(time.time() * 1000))


def _new_id() -> str:
	return str(uuid.uuid4())


def match_prefix(items: Iterable[_Item], prefix: str) -> List[_Item]:
	needle = prefix.strip().lower()
	if not needle:
		return []
	return [item for item in items if item.id.lower().startswith(needle)]


def _check_updates(kind: str, item: object, updates: Dict[str, object], nullable: frozenset) -> None:
	for key, value in updates.items():
		if key in _READ_ONLY_FIELDS or not hasattr(item, key):
			raise InvalidTransitionError(f"{kind} field '{key}' cannot be updated.")
		if value is None and key not in nullable:
			raise InvalidTransitionError(f"{kind} field '{key}' cannot be empty.")


class EntityStore:
	"""Observable in-memory state for one discussion session.

	Every mutator notifies subscribers with a short event name. Tracked items
	are returned as copies so callers cannot bypass the mutators.
	"""

	def __init__(
		self,
		*,
		personas: Optional[Iterable[Persona]] = None,
		memory_capacity: int = constants.MAX_MEMORY_ENTRIES,
		clock: Callable[[], float] = _now_ms,
		id_factory: Callable[[], str] = _new_id,
	):
		self._clock = clock
		self._id_factory = id_factory
		self._listeners: List[Listener] = []
		self._personas: Dict[str, Persona] = dict(DEFAULT_PERSONAS)
		for persona in personas or ():
			self._personas[persona.name] = persona
		self._memory_capacity = max(1, memory_capacity)
		self.config = SessionConfig()
		self._reset_session_state()

	def _reset_session_state(self) -> None:
		self._messages: List[DiscussionMessage] = []
		self._questions: List[TrackedQuestion] = []
		self._stories: List[TrackedStory] = []
		self._tasks: List[TrackedTask] = []
		self._memory: Deque[str] = deque(maxlen=self._memory_capacity)
		self._roster: List[str] = []
		self._topic: Optional[str] = None
		self.context = ""
		self.repository_context: Optional[str] = None
		self.repository_file_count = 0
		self.narrative_summary = ""
		self.is_loading = False
		self.is_rate_limited = False
		self.is_quota_exceeded = False
		self.is_help_open = False
		self.auto_mode_enabled = False
		self.auto_mode_delay_seconds: float = constants.DEFAULT_AUTO_MODE_DELAY_SECONDS
		self.last_action_was_auto_continue = False
		self.error: Optional[str] = None

	# -- observation -------------------------------------------------------

	def subscribe(self, listener: Listener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _unsubscribe() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _unsubscribe

	def _notify(self, event: str) -> None:
		for listener in list(self._listeners):
			listener(event)

	def now(self) -> float:
		return self._clock()

	# -- personas and roster -------------------------------------------------

	def personas(self) -> Dict[str, Persona]:
		return dict(self._personas)

	def find_persona(self, name: str) -> Optional[Persona]:
		persona = self._personas.get(name)
		if persona is not None:
			return persona
		lowered = name.strip().lower()
		for candidate in self._personas.values():
			if candidate.name.lower() == lowered:
				return candidate
		return None

	def system_persona(self) -> Persona:
		return self._personas.get(constants.ROLE_SYSTEM, DEFAULT_PERSONAS[constants.ROLE_SYSTEM])

	def add_persona(self, persona: Persona) -> Persona:
		if persona.name in constants.RESERVED_ROLES:
			raise InvalidTransitionError(f"'{persona.name}' is a reserved persona name.")
		existing = self._personas.get(persona.name)
		if existing is not None and not existing.is_custom:
			raise InvalidTransitionError(f"'{persona.name}' is a built-in persona.")
		stored = replace(persona, is_custom=True)
		self._personas[stored.name] = stored
		self._notify("personas")
		return stored

	def remove_persona(self, name: str) -> None:
		persona = self._personas.get(name)
		if persona is None:
			raise EntityNotFoundError(f"Persona '{name}' not found.")
		if not persona.is_custom:
			raise InvalidTransitionError(f"Persona '{name}' is built in and cannot be removed.")
		del self._personas[name]
		if name in self._roster:
			self._roster = [role for role in self._roster if role != name]
		self._notify("personas")

	def roster(self) -> List[str]:
		return list(self._roster)

	def roster_personas(self) -> List[Persona]:
		return [self._personas[name] for name in self._roster if name in self._personas]

	def set_roster(self, names: Sequence[str]) -> List[str]:
		roster: List[str] = []
		for name in names:
			persona = self.find_persona(name)
			if persona is None:
				raise EntityNotFoundError(f"Persona '{name}' not found.")
			if persona.name in constants.RESERVED_ROLES:
				raise InvalidTransitionError(f"'{persona.name}' cannot join the discussion roster.")
			if persona.name not in roster:
				roster.append(persona.name)
		if constants.ROLE_SCRUM_LEADER not in roster:
			roster.append(constants.ROLE_SCRUM_LEADER)
		self._roster = roster
		self._notify("roster")
		return list(roster)

	def deselect_persona(self, name: str) -> List[str]:
		persona = self.find_persona(name)
		if persona is None or persona.name not in self._roster:
			raise EntityNotFoundError(f"Persona '{name}' is not in the active roster.")
		if persona.name == constants.ROLE_SCRUM_LEADER:
			raise InvalidTransitionError(f"'{constants.ROLE_SCRUM_LEADER}' leads the discussion and cannot be deselected.")
		self._roster = [role for role in self._roster if role != persona.name]
		self._notify("roster")
		return list(self._roster)

	# -- topic and flags ----------------------------------------------------

	@property
	def topic(self) -> Optional[str]:
		return self._topic

	def set_topic(self, topic: Optional[str]) -> None:
		self._topic = topic.strip() if topic else None
		self.error = None
		self._notify("topic")

	def set_loading(self, loading: bool) -> None:
		self.is_loading = loading
		self._notify("flags")

	def set_quota_exceeded(self, exceeded: bool) -> None:
		self.is_quota_exceeded = exceeded
		self._notify("flags")

	def set_rate_limited(self, limited: bool) -> None:
		self.is_rate_limited = limited
		self._notify("flags")

	def toggle_help(self) -> bool:
		self.is_help_open = not self.is_help_open
		self._notify("flags")
		return self.is_help_open

	def set_narrative_summary(self, summary: str) -> None:
		self.narrative_summary = summary
		self._notify("summary")

	def set_repository_context(self, text: str, file_count: int) -> None:
		self.repository_context = text
		self.repository_file_count = file_count
		self._notify("context")

	def clear_repository_context(self) -> None:
		self.repository_context = None
		self.repository_file_count = 0
		self._notify("context")

	# -- messages and memory -------------------------------------------------

	def messages(self) -> Tuple[DiscussionMessage, ...]:
		return tuple(self._messages)

	def last_message(self) -> Optional[DiscussionMessage]:
		return self._messages[-1] if self._messages else None

	def add_message(
		self,
		persona_name: str,
		text: str,
		*,
		thoughts: Sequence[str] = (),
		work: Optional[str] = None,
		is_command_response: bool = False,
		is_error: bool = False,
		citations: Optional[Sequence[Citation]] = None,
	) -> DiscussionMessage:
		persona = self._personas.get(persona_name) or self.system_persona()
		message = DiscussionMessage(
			id=self._id_factory(),
			persona=persona,
			text=text,
			timestamp=self._clock(),
			thoughts=tuple(thoughts),
			work=work,
			is_command_response=is_command_response,
			is_error=is_error,
			citations=tuple(citations) if citations else None,
		)
		self._messages.append(message)
		self._notify("messages")
		return message

	def add_error_message(self, text: str) -> DiscussionMessage:
		message = self.add_message(constants.ROLE_SYSTEM, text, is_error=True)
		self.error = text
		return message

	def memory(self) -> List[str]:
		return list(self._memory)

	def add_memory_entry(self, entry: str) -> None:
		cleaned = entry.strip()
		if not cleaned:
			return
		self._memory.append(cleaned)
		self._notify("memory")

	# -- questions ---------------------------------------------------------

	def questions(self) -> List[TrackedQuestion]:
		return [replace(question) for question in self._questions]

	def _question(self, question_id: str) -> TrackedQuestion:
		for question in self._questions:
			if question.id == question_id:
				return question
		raise EntityNotFoundError(f"Question '{question_id}' not found.")

	def get_question(self, question_id: str) -> TrackedQuestion:
		return replace(self._question(question_id))

	def add_question(self, text: str, *, origin_persona: Persona, origin_message_id: str) -> TrackedQuestion:
		question = TrackedQuestion(
			id=self._id_factory(),
			text=text,
			origin_persona=origin_persona.name,
			origin_glyph=origin_persona.glyph,
			origin_message_id=origin_message_id,
			timestamp=self._clock(),
		)
		self._questions.append(question)
		self._notify("questions")
		return replace(question)

	def set_question_status(self, question_id: str, status: QuestionStatus) -> bool:
		if status not in QUESTION_STATUSES:
			raise InvalidTransitionError(f"Unknown question status '{status}'.")
		question = self._question(question_id)
		if question.status == status:
			return False
		question.status = status
		self._notify("questions")
		return True

	def remove_question(self, question_id: str) -> None:
		self._question(question_id)
		self._questions = [question for question in self._questions if question.id != question_id]
		self._notify("questions")

	def clear_questions(self, status: Optional[QuestionStatus] = None) -> int:
		before = len(self._questions)
		if status is None:
			self._questions = []
		else:
			self._questions = [question for question in self._questions if question.status != status]
		self._notify("questions")
		return before - len(self._questions)

	# -- stories -----------------------------------------------------------

	def stories(self) -> List[TrackedStory]:
		return [replace(story, acceptance_criteria=list(story.acceptance_criteria)) for story in self._stories]

	def _story(self, story_id: str) -> TrackedStory:
		for story in self._stories:
			if story.id == story_id:
				return story
		raise EntityNotFoundError(f"Story '{story_id}' not found.")

	def get_story(self, story_id: str) -> TrackedStory:
		story = self._story(story_id)
		return replace(story, acceptance_criteria=list(story.acceptance_criteria))

	def add_story(
		self,
		*,
		user_story: str,
		benefit: str,
		created_by: str,
		acceptance_criteria: Sequence[str] = (),
		priority: str = "Medium",
		sprint_points: Optional[int] = None,
		origin_question_id: Optional[str] = None,
	) -> TrackedStory:
		story = TrackedStory(
			id=self._id_factory(),
			user_story=user_story,
			benefit=benefit,
			created_by=created_by,
			timestamp=self._clock(),
			topic_context=self._topic or "General",
			acceptance_criteria=list(acceptance_criteria),
			status=STORY_BACKLOG,
			priority=priority if priority in STORY_PRIORITIES else "Medium",  # type: ignore[arg-type]
			sprint_points=sprint_points,
			origin_question_id=origin_question_id,
		)
		self._stories.append(story)
		self._notify("stories")
		return self.get_story(story.id)

	def update_story(self, story_id: str, *, derived: bool = False, **updates: object) -> TrackedStory:
		"""Apply field updates to a story.

		In Progress and Done are only reachable through task aggregation, so the
		caller must pass ``derived=True`` to write them.
		"""
		story = self._story(story_id)
		_check_updates("Story", story, updates, _NULLABLE_STORY_FIELDS)
		status = updates.get("status")
		if status is not None:
			if status not in STORY_STATUSES:
				raise InvalidTransitionError(f"Unknown story status '{status}'.")
			if status in DERIVED_STORY_STATUSES and not derived:
				raise InvalidTransitionError(f"Story status '{status}' is derived from its tasks and cannot be set directly.")
		priority = updates.get("priority")
		if priority is not None and priority not in STORY_PRIORITIES:
			raise InvalidTransitionError(f"Unknown story priority '{priority}'.")
		for key, value in updates.items():
			if key == "acceptance_criteria":
				value = list(value)  # type: ignore[call-overload]
			setattr(story, key, value)
		self._notify("stories")
		return self.get_story(story_id)

	def remove_story(self, story_id: str) -> None:
		self._story(story_id)
		self._stories = [story for story in self._stories if story.id != story_id]
		for task in self._tasks:
			if task.story_id == story_id:
				task.story_id = None
		self._notify("stories")
		self._notify("tasks")

	def clear_stories(self, status: Optional[StoryStatus] = None) -> int:
		before = len(self._stories)
		kept = [story for story in self._stories if status is not None and story.status != status]
		kept_ids = {story.id for story in kept}
		self._stories = kept
		for task in self._tasks:
			if task.story_id is not None and task.story_id not in kept_ids:
				task.story_id = None
		self._notify("stories")
		self._notify("tasks")
		return before - len(kept)

	# -- tasks -------------------------------------------------------------

	def tasks(self) -> List[TrackedTask]:
		return [replace(task) for task in self._tasks]

	def tasks_for_story(self, story_id: str) -> List[TrackedTask]:
		return [replace(task) for task in self._tasks if task.story_id == story_id]

	def tasks_for_persona(self, persona_name: str, *, open_only: bool = False) -> List[TrackedTask]:
		tasks = [task for task in self._tasks if task.assigned_persona == persona_name]
		if open_only:
			tasks = [task for task in tasks if task.status != "Done"]
		return [replace(task) for task in sorted(tasks, key=lambda task: task.order)]

	def _task(self, task_id: str) -> TrackedTask:
		for task in self._tasks:
			if task.id == task_id:
				return task
		raise EntityNotFoundError(f"Task '{task_id}' not found.")

	def get_task(self, task_id: str) -> TrackedTask:
		return replace(self._task(task_id))

	def add_task(
		self,
		description: str,
		*,
		created_by: str,
		assigned_persona: Optional[str] = None,
		story_id: Optional[str] = None,
		priority: str = "Medium",
	) -> TrackedTask:
		if story_id is not None:
			self._story(story_id)
		now = self._clock()
		# Keeps insertion order stable when the clock does not advance between tasks.
		order = max([now] + [task.order + 1 for task in self._tasks])
		task = TrackedTask(
			id=self._id_factory(),
			description=description,
			created_by=created_by,
			timestamp=now,
			order=order,
			topic_context=self._topic or "General",
			status=TASK_TODO,
			priority=priority if priority in TASK_PRIORITIES else "Medium",  # type: ignore[arg-type]
			assigned_persona=assigned_persona,
			story_id=story_id,
		)
		self._tasks.append(task)
		self._notify("tasks")
		return replace(task)

	def update_task(self, task_id: str, **updates: object) -> TrackedTask:
		task = self._task(task_id)
		_check_updates("Task", task, updates, _NULLABLE_TASK_FIELDS)
		status = updates.get("status")
		if status is not None and status not in TASK_STATUSES:
			raise InvalidTransitionError(f"Unknown task status '{status}'.")
		priority = updates.get("priority")
		if priority is not None and priority not in TASK_PRIORITIES:
			raise InvalidTransitionError(f"Unknown task priority '{priority}'.")
		story_id = updates.get("story_id")
		if story_id is not None:
			self._story(str(story_id))
		for key, value in updates.items():
			setattr(task, key, value)
		self._notify("tasks")
		return replace(task)

	def remove_task(self, task_id: str) -> None:
		self._task(task_id)
		self._tasks = [task for task in self._tasks if task.id != task_id]
		self._notify("tasks")

	def clear_tasks(self, status: Optional[TaskStatus] = None) -> int:
		before = len(self._tasks)
		if status is None:
			self._tasks = []
		else:
			self._tasks = [task for task in self._tasks if task.status != status]
		self._notify("tasks")
		return before - len(self._tasks)

	# -- session lifecycle ---------------------------------------------------

	def clear_session(self) -> None:
		config = self.config
		self._reset_session_state()
		self.config = SessionConfig(
			provider=config.provider,
			model=config.model,
			api_keys=dict(config.api_keys),
			parameters=config.parameters,
			num_thoughts=config.num_thoughts,
		)
		logger.info("discussion session cleared")
		self._notify("session")

	def replace_discussion(
		self,
		messages: Sequence[DiscussionMessage],
		*,
		topic: str,
		personas: Iterable[Persona],
		roster: Sequence[str],
	) -> None:
		"""Swap in an imported discussion and reset everything derived from the old one."""
		config = self.config
		self._reset_session_state()
		self.config = config
		self.config.auto_mode_enabled = False
		for persona in personas:
			if persona.name not in self._personas:
				self._personas[persona.name] = persona
		self._messages = list(messages)
		self._topic = topic
		self._roster = [name for name in roster if name in self._personas]
		self._notify("session")

	def snapshot(self) -> Dict[str, object]:
		return {
			"topic": self._topic,
			"roster": self.roster(),
			"messages": [message.as_dict() for message in self._messages],
			"questions": [question.as_dict() for question in self._questions],
			"stories": [story.as_dict() for story in self._stories],
			"tasks": [task.as_dict() for task in self._tasks],
			"memory": self.memory(),
			"narrative_summary": self.narrative_summary,
			"repository_file_count": self.repository_file_count,
			"flags": {
				"is_loading": self.is_loading,
				"is_rate_limited": self.is_rate_limited,
				"is_quota_exceeded": self.is_quota_exceeded,
				"is_help_open": self.is_help_open,
				"auto_mode_enabled": self.auto_mode_enabled,
				"auto_mode_delay_seconds": self.auto_mode_delay_seconds,
			},
			"error": self.error,
		}
