from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from agile_bloom.backend import constants
from agile_bloom.backend.engine import prompts
from agile_bloom.backend.engine.commands import requests_search
from agile_bloom.backend.engine.config import EngineSettings
from agile_bloom.backend.engine.errors import (
	EngineError,
	EntityNotFoundError,
	InvalidTransitionError,
	QuotaExceededError,
)
from agile_bloom.backend.engine.prompts import PromptAssembler
from agile_bloom.backend.engine.providers import ResponseRouter
from agile_bloom.backend.engine.retry import Sleep
from agile_bloom.backend.engine.store import EntityStore, match_prefix
from agile_bloom.backend.engine.story_table import parse_story_table
from agile_bloom.backend.engine.types import (
	QUESTION_ADDRESSED,
	QUESTION_ADDRESSING,
	QUESTION_STATUSES,
	STORY_DONE,
	STORY_IN_PROGRESS,
	STORY_SELECTED,
	TASK_DONE,
	TASK_IN_PROGRESS,
	Attachment,
	CommandIntent,
	DiscussionMessage,
	Persona,
	QuestionStatus,
	StoryStatus,
	TrackedTask,
)
from agile_bloom.backend.engine.validation import ParsedResponse, allowed_personas


logger = logging.getLogger(__name__)

AI_CREATOR = "AI"


def derive_story_status(tasks: Sequence[TrackedTask]) -> Optional[StoryStatus]:
	"""Aggregate task statuses into the parent story status.

	Returns ``None`` for a story without tasks, whose status is left alone.
	"""
	if not tasks:
		return None
	if all(task.status == TASK_DONE for task in tasks):
		return STORY_DONE
	if any(task.status == TASK_IN_PROGRESS for task in tasks):
		return STORY_IN_PROGRESS
	return STORY_SELECTED


def _plural(count: int, singular: str, plural: str) -> str:
	return singular if count == 1 else plural


@dataclass
class BulkResult:
	updated: List[str] = field(default_factory=list)
	unchanged: List[str] = field(default_factory=list)
	failures: Dict[str, str] = field(default_factory=dict)

	def seen(self, question_id: str) -> bool:
		return question_id in self.failures or question_id in self.updated or question_id in self.unchanged

	def as_dict(self) -> Dict[str, object]:
		return {"updated": list(self.updated), "unchanged": list(self.unchanged), "failures": dict(self.failures)}


class DispatchScheduler:
	"""Executes intents against the providers and folds replies into the store.

	Calls are strictly sequential: every call sees the history written by the
	one before it.
	"""

	def __init__(
		self,
		store: EntityStore,
		router: ResponseRouter,
		*,
		settings: Optional[EngineSettings] = None,
		assembler: Optional[PromptAssembler] = None,
		sleep: Sleep = asyncio.sleep,
	):
		self.store = store
		self.router = router
		self.settings = settings or router.settings
		self.assembler = assembler or PromptAssembler(store, history_turns=self.settings.history_turns)
		self._sleep = sleep

	# -- ordering ------------------------------------------------------------

	def round_robin_order(self) -> List[Persona]:
		roster = self.store.roster_personas()
		leaders = [persona for persona in roster if persona.name == constants.ROLE_SCRUM_LEADER]
		others = [persona for persona in roster if persona.name != constants.ROLE_SCRUM_LEADER]
		return leaders + others

	def _leader(self) -> Persona:
		leader = self.store.find_persona(constants.ROLE_SCRUM_LEADER)
		if leader is None:
			raise EntityNotFoundError(f"Persona '{constants.ROLE_SCRUM_LEADER}' not found.")
		return leader

	# -- single call -----------------------------------------------------------

	async def call_persona(
		self,
		persona: Persona,
		instruction: str,
		*,
		num_thoughts: Optional[int] = None,
		assigned_tasks_context: Optional[str] = None,
		attachment: Optional[Attachment] = None,
		story_id: Optional[str] = None,
		origin_question_id: Optional[str] = None,
		search_requested: bool = False,
		is_command: bool = True,
	) -> DiscussionMessage:
		thoughts = self.store.config.num_thoughts if num_thoughts is None else num_thoughts
		system_prompt = self.assembler.build(
			instruction=instruction,
			emulate=persona,
			num_thoughts=thoughts,
			assigned_tasks_context=assigned_tasks_context,
		)
		parsed = await self.router.respond(
			self.store.config,
			system_prompt,
			instruction,
			allowed=allowed_personas(self.store.roster_personas(), self.store.personas()),
			system=self.store.system_persona(),
			attachment=attachment,
			search_requested=search_requested,
		)
		return self.apply_response(
			parsed,
			story_id=story_id,
			origin_question_id=origin_question_id,
			is_command=is_command,
		)

	# -- entity mutation -------------------------------------------------------

	def apply_response(
		self,
		parsed: ParsedResponse,
		*,
		story_id: Optional[str] = None,
		origin_question_id: Optional[str] = None,
		is_command: bool = False,
	) -> DiscussionMessage:
		store = self.store
		if parsed.reattributed_from is not None:
			store.add_error_message(f"AI returned an invalid expert role: {parsed.reattributed_from}. Displaying as System.")

		is_command_response = parsed.is_command_response
		if is_command_response is None:
			is_command_response = bool(parsed.work) or is_command

		message = store.add_message(
			parsed.persona_name,
			parsed.message,
			thoughts=parsed.thoughts,
			work=parsed.work,
			is_command_response=is_command_response,
			citations=parsed.citations,
		)

		if parsed.memory_entry:
			store.add_memory_entry(parsed.memory_entry)

		if message.persona.name not in constants.RESERVED_ROLES:
			seen = set()
			for thought in parsed.thoughts:
				key = thought.strip()
				if key in seen or not self.settings.is_material_question(key):
					continue
				seen.add(key)
				store.add_question(key, origin_persona=message.persona, origin_message_id=message.id)

		stories_created = 0
		for story in parsed.stories:
			store.add_story(
				user_story=story.user_story,
				benefit=story.benefit,
				acceptance_criteria=story.acceptance_criteria,
				created_by=AI_CREATOR,
				priority=story.priority,
				sprint_points=story.sprint_points,
				origin_question_id=origin_question_id,
			)
			stories_created += 1

		linked_story = story_id
		if linked_story is not None and not any(story.id == linked_story for story in store.stories()):
			logger.warning("story %s disappeared during dispatch; tasks are added unlinked", linked_story)
			linked_story = None
		tasks_created = 0
		for task in parsed.tasks:
			assignee = store.find_persona(task.assigned_to) if task.assigned_to else None
			store.add_task(
				task.description,
				created_by=AI_CREATOR,
				assigned_persona=assignee.name if assignee is not None else None,
				story_id=linked_story,
			)
			tasks_created += 1

		if parsed.work and not parsed.stories and message.persona.name == constants.ROLE_SCRUM_LEADER and is_command_response:
			table_stories = parse_story_table(parsed.work)
			for row in table_stories:
				store.add_story(
					user_story=row.user_story,
					benefit=row.benefit,
					acceptance_criteria=row.acceptance_criteria,
					created_by=AI_CREATOR,
					origin_question_id=origin_question_id or self._question_ref(row.question_ref),
				)
			if table_stories:
				count = len(table_stories)
				store.add_message(
					constants.ROLE_SYSTEM,
					f"Generated {count} user {_plural(count, 'story', 'stories')}. View and manage them in the stories list.",
					is_command_response=True,
				)

		if tasks_created or stories_created:
			summary = "Based on the recent discussion, I've generated"
			if tasks_created:
				summary += f" {tasks_created} {_plural(tasks_created, 'task', 'tasks')}"
				if linked_story:
					summary += f" for story #{prompts.short_id(linked_story)}"
			if stories_created:
				summary += f"{' and' if tasks_created else ''} {stories_created} user {_plural(stories_created, 'story', 'stories')}"
			summary += ". You can review them in the tracked items."
			store.add_message(constants.ROLE_SYSTEM, summary, is_command_response=True)
		return message

	def _question_ref(self, reference: str) -> Optional[str]:
		if not reference:
			return None
		matches = match_prefix(self.store.questions(), reference)
		return matches[0].id if len(matches) == 1 else None

	# -- intents ---------------------------------------------------------------

	async def run(self, intent: CommandIntent, *, attachment: Optional[Attachment] = None) -> None:
		instruction = intent.ai_instruction_text or intent.user_message_text
		if attachment is not None and attachment.is_text:
			instruction = prompts.attach_text_file(instruction, name=attachment.name, content=attachment.text_content or "")
		search = requests_search(intent.user_message_text)

		if intent.action == "single":
			persona = self.store.find_persona(intent.target_persona or "")
			if persona is None:
				raise EntityNotFoundError(f"Persona '{intent.target_persona}' not found.")
			await self.call_persona(
				persona,
				instruction,
				assigned_tasks_context=intent.assigned_tasks_context,
				attachment=attachment,
				search_requested=search,
			)
			return
		if intent.action != "round_robin":
			raise InvalidTransitionError(f"Intent '{intent.action}' does not dispatch any call.")
		if intent.breakdown_story_id:
			await self.breakdown(intent.breakdown_story_id)
			return
		await self.round_robin(
			instruction,
			attachment=attachment,
			search_requested=search,
			is_command=intent.user_message_text.startswith("/"),
		)

	async def round_robin(
		self,
		instruction: str,
		*,
		attachment: Optional[Attachment] = None,
		search_requested: bool = False,
		is_command: bool = False,
	) -> int:
		order = self.round_robin_order()
		logger.info("round robin over %d persona(s)", len(order))
		for index, persona in enumerate(order):
			if index:
				await self._sleep(self.settings.call_delay_s)
			await self.call_persona(
				persona,
				instruction,
				attachment=attachment,
				search_requested=search_requested,
				is_command=is_command,
			)
		return len(order)

	async def breakdown(self, story_id: str) -> int:
		story = self.store.get_story(story_id)
		personas = [persona for persona in self.round_robin_order() if persona.name != constants.ROLE_SCRUM_LEADER]
		logger.info("breaking down story %s across %d persona(s)", prompts.short_id(story.id), len(personas))
		for index, persona in enumerate(personas):
			if index:
				await self._sleep(self.settings.call_delay_s)
			await self.call_persona(
				persona,
				prompts.breakdown_instruction(persona, story),
				num_thoughts=0,
				story_id=story.id,
			)
		return len(personas)

	# -- questions -------------------------------------------------------------

	async def update_question_status(self, question_id: str, status: QuestionStatus) -> bool:
		"""Apply a question transition and trigger its follow-up call.

		Returns ``False`` when the question already has ``status``; nothing is
		called in that case.
		"""
		if status not in QUESTION_STATUSES:
			raise InvalidTransitionError(f"Unknown question status '{status}'.")
		question = self.store.get_question(question_id)
		if not self.store.set_question_status(question.id, status):
			return False
		if status == QUESTION_ADDRESSING:
			await self.round_robin(prompts.discuss_question_instruction(question), is_command=True)
		elif status == QUESTION_ADDRESSED:
			await self.call_persona(
				self._leader(),
				prompts.story_from_question_instruction(question),
				num_thoughts=0,
				origin_question_id=question.id,
			)
		return True

	async def bulk_update_questions(
		self,
		question_ids: Sequence[str],
		status: QuestionStatus,
		result: Optional[BulkResult] = None,
	) -> BulkResult:
		"""Apply one status to many questions.

		Items are independent of each other, so a failure is recorded and the
		batch moves on. A quota failure stops the batch; ``result`` is filled in
		place so the caller still sees what was applied before it.
		"""
		if result is None:
			result = BulkResult()
		triggers_call = status in (QUESTION_ADDRESSING, QUESTION_ADDRESSED)
		for question_id in question_ids:
			try:
				changed = await self.update_question_status(question_id, status)
			except EngineError as exc:
				logger.warning("bulk question update failed for %s: %s", question_id, exc.message)
				result.failures[question_id] = exc.message
				if isinstance(exc, QuotaExceededError):
					raise
				continue
			if changed:
				result.updated.append(question_id)
				if triggers_call:
					await self._sleep(self.settings.bulk_delay_s)
			else:
				result.unchanged.append(question_id)
		return result

	# -- tasks and stories -------------------------------------------------------

	def recompute_story_status(self, story_id: str) -> Optional[StoryStatus]:
		story = self.store.get_story(story_id)
		derived = derive_story_status(self.store.tasks_for_story(story_id))
		if derived is None or derived == story.status:
			return None
		self.store.update_story(story_id, derived=True, status=derived)
		logger.info("story %s moved to %s", prompts.short_id(story_id), derived)
		return derived

	def update_task(self, task_id: str, **updates: object) -> TrackedTask:
		previous = self.store.get_task(task_id)
		task = self.store.update_task(task_id, **updates)
		if "status" in updates or "story_id" in updates:
			for story_id in {previous.story_id, task.story_id}:
				if story_id is not None:
					self.recompute_story_status(story_id)
		return self.store.get_task(task_id)

	async def generate_tasks_from_context(self) -> DiscussionMessage:
		return await self.call_persona(self._leader(), prompts.GENERATE_TASKS_PROMPT, num_thoughts=0)

	async def compile_documentation(self, persona_name: str) -> DiscussionMessage:
		persona = self.store.find_persona(persona_name)
		if persona is None:
			raise EntityNotFoundError(f"Persona '{persona_name}' not found.")
		tasks = self.store.tasks_for_persona(persona.name, open_only=True)
		if not tasks:
			raise EntityNotFoundError(f"No active tasks found for {persona.name} to compile documentation from.")
		return await self.call_persona(
			persona,
			prompts.compile_documentation_instruction(persona, tasks),
			num_thoughts=0,
		)

	async def refresh_narrative_summary(self) -> Optional[str]:
		if len(self.store.messages()) < 2:
			return None
		leader = self._leader()
		system_prompt = self.assembler.build(instruction=prompts.NARRATIVE_SUMMARY_PROMPT, emulate=leader, num_thoughts=0)
		try:
			parsed = await self.router.respond(
				self.store.config,
				system_prompt,
				prompts.NARRATIVE_SUMMARY_PROMPT,
				allowed=allowed_personas([leader], self.store.personas()),
				system=self.store.system_persona(),
			)
		except QuotaExceededError:
			raise
		except EngineError as exc:
			logger.warning("narrative summary refresh failed: %s", exc.message)
			self.store.set_narrative_summary("Error updating summary.")
			return None
		if parsed.message:
			self.store.set_narrative_summary(parsed.message)
		return self.store.narrative_summary
