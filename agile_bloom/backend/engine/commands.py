from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, TypeVar

from agile_bloom.backend import constants
from agile_bloom.backend.engine import prompts
from agile_bloom.backend.engine.store import EntityStore, match_prefix
from agile_bloom.backend.engine.types import (
	DERIVED_STORY_STATUSES,
	QUESTION_ADDRESSED,
	QUESTION_ADDRESSING,
	STORY_BACKLOG,
	STORY_SELECTED,
	CommandIntent,
	TrackedQuestion,
	TrackedStory,
	TrackedTask,
)


logger = logging.getLogger(__name__)

NO_TOPIC_MESSAGE = "No active discussion. Start a discussion with a topic first."

_Item = TypeVar("_Item", TrackedQuestion, TrackedStory, TrackedTask)


@dataclass(frozen=True)
class CommandHelp:
	name: str
	arguments: str
	description: str
	example: str


AVAILABLE_COMMANDS: Tuple[CommandHelp, ...] = (
	CommandHelp("/elaborate", "{expert_name}", "Ask a specific active expert to elaborate.", "/elaborate Engineer"),
	CommandHelp("/ask", "{question_for_the_team}", "Ask a question. Search-capable models may look up current facts.", "/ask What are the main risks?"),
	CommandHelp("/search", "{search_query}", "Search the web for relevant information and discuss the findings.", "/search latest trends in AI-driven development"),
	CommandHelp("/suggest", "{suggestion}", "Make a suggestion. Experts provide feedback.", "/suggest Let's focus on user experience first."),
	CommandHelp("/insight", "{insight_message}", "Share an insight. Experts discuss its implications.", "/insight I noticed a pattern in user feedback."),
	CommandHelp("/direction", "{directive_message}", "Provide a directive. Experts acknowledge and discuss.", "/direction We need to finalize the MVP scope by EOD."),
	CommandHelp("/dataset", "{link_or_data_description}", "Provide data for the experts to analyze.", "/dataset Market research report: www.example.com/report.pdf"),
	CommandHelp("/show-work", "{expert_name}", "Ask an expert to show work on their assigned tasks.", "/show-work Artist"),
	CommandHelp("/debug", "{error_message_or_backtrace}", "Present an issue for debugging.", "/debug The login page is throwing a 500 error."),
	CommandHelp("/game", "{expert1}, {expert2}, {thought}", "Simulate a 'twenty questions' style game.", "/game Engineer, Linguist, The future of AI"),
	CommandHelp("/continue", "", "Prompt the experts to continue the discussion.", "/continue"),
	CommandHelp("/analyze", "{story_or_task_id}", "Run a FISH analysis on a story or task.", "/analyze 1a2b3c"),
	CommandHelp("/backlog", "", "Ask the Scrum Leader for a backlog health check.", "/backlog"),
	CommandHelp("/summary", "", "Ask the Scrum Leader for a summary or burn-down.", "/summary"),
	CommandHelp("/questions", "[discuss {id}]", "Focus the discussion on one tracked question.", "/questions discuss 1a2b3c"),
	CommandHelp("/stories", "[filter]", "Turn addressed questions into user stories.", "/stories open"),
	CommandHelp("/sprint-planning", "", "Ask the Scrum Leader to propose a sprint.", "/sprint-planning"),
	CommandHelp("/breakdown", "{story_id}", "Break a user story down into tasks.", "/breakdown 1a2b3c"),
	CommandHelp("/help", "", "Show the list of commands.", "/help"),
	CommandHelp("/clear", "", "Clear the current discussion and reset the session.", "/clear"),
)

COMMANDS_BY_NAME: Dict[str, CommandHelp] = {command.name: command for command in AVAILABLE_COMMANDS}

_ROUND_ROBIN_COMMANDS = {"/ask", "/search", "/suggest", "/insight", "/direction", "/dataset", "/debug", "/game", "/continue"}


class _PrefixLookupError(Exception):
	pass


def resolve_prefix(items: Sequence[_Item], prefix: str, label: str) -> _Item:
	matches = match_prefix(items, prefix)
	if not matches:
		raise _PrefixLookupError(f"{label} with ID prefix '{prefix}' not found.")
	if len(matches) > 1:
		listed = ", ".join(prompts.short_id(item.id) for item in matches)
		raise _PrefixLookupError(f"ID prefix '{prefix}' is ambiguous: it matches {len(matches)} items ({listed}). Use a longer prefix.")
	return matches[0]


class CommandInterpreter:
	"""Turns raw user input into a ``CommandIntent``.

	Interpretation reads the store and applies the few state changes that the
	command set defines as immediate: ``/breakdown`` selects the story for the
	sprint, ``/questions discuss`` marks the question as being addressed,
	``/help`` toggles the help flag and ``/clear`` resets the session.
	"""

	def __init__(self, store: EntityStore):
		self._store = store

	def _error(self, text: str, message: str) -> CommandIntent:
		return CommandIntent(action="error", user_message_text=text, error_message=message)

	def interpret(self, raw_text: str) -> CommandIntent:
		text = raw_text.strip()
		topic = self._store.topic
		if not text.startswith("/"):
			if not topic:
				return self._error(text, NO_TOPIC_MESSAGE)
			return CommandIntent(action="round_robin", user_message_text=text, ai_instruction_text=text)

		parts = text.split()
		command = parts[0].lower()
		args = parts[1:]
		if command not in COMMANDS_BY_NAME:
			return self._error(text, f"Unknown command: {command}. Type /help for a list of commands.")

		try:
			return self._dispatch(command, args, text)
		except _PrefixLookupError as exc:
			logger.debug("prefix lookup failed for %s: %s", command, exc)
			return self._error(text, str(exc))

	def _dispatch(self, command: str, args: List[str], text: str) -> CommandIntent:
		topic = self._store.topic
		if command in _ROUND_ROBIN_COMMANDS:
			if command == "/continue" and args:
				return self._error(text, "/continue command does not take arguments.")
			if not topic:
				return self._error(text, NO_TOPIC_MESSAGE)
			return CommandIntent(action="round_robin", user_message_text=text, ai_instruction_text=" ".join(args) or text)

		if command in {"/elaborate", "/show-work"}:
			return self._persona_command(command, args, text)
		if command == "/analyze":
			return self._analyze(args, text)
		if command in {"/backlog", "/summary"}:
			if not topic:
				return self._error(text, NO_TOPIC_MESSAGE)
			return CommandIntent(
				action="single",
				user_message_text=text,
				ai_instruction_text=text,
				target_persona=constants.ROLE_SCRUM_LEADER,
			)
		if command == "/sprint-planning":
			return self._sprint_planning(text)
		if command == "/breakdown":
			return self._breakdown(args, text)
		if command == "/questions":
			return self._questions(args, text)
		if command == "/stories":
			return self._stories(args, text)
		if command == "/help":
			self._store.toggle_help()
			return CommandIntent(action="noop", user_message_text=text)
		# /clear
		self._store.clear_session()
		return CommandIntent(action="noop", user_message_text=text)

	def _persona_command(self, command: str, args: List[str], text: str) -> CommandIntent:
		if not args:
			return self._error(text, f"Please specify an expert for {command}.")
		if not self._store.topic:
			return self._error(text, NO_TOPIC_MESSAGE)
		requested = " ".join(args)
		persona = self._store.find_persona(requested) or self._store.find_persona(args[0])
		roster = self._store.roster()
		if persona is None or persona.name not in roster:
			return self._error(text, f"Unknown or inactive expert: {requested}. Active experts: {', '.join(roster)}.")
		assigned = self._store.tasks_for_persona(persona.name)
		return CommandIntent(
			action="single",
			user_message_text=text,
			ai_instruction_text=text,
			target_persona=persona.name,
			assigned_tasks_context=prompts.format_task_lines(assigned) or None,
		)

	def _analyze(self, args: List[str], text: str) -> CommandIntent:
		if not args:
			return self._error(text, "Please provide the ID prefix of the story or task to analyze. e.g., /analyze 1a2b3c")
		candidates: List[TrackedStory | TrackedTask] = [*self._store.stories(), *self._store.tasks()]
		item = resolve_prefix(candidates, args[0], "Story or task")
		return CommandIntent(
			action="single",
			user_message_text=text,
			ai_instruction_text=prompts.analysis_instruction(item),
			target_persona=constants.ROLE_SCRUM_LEADER,
		)

	def _sprint_planning(self, text: str) -> CommandIntent:
		ready = [story for story in self._store.stories() if story.status in (STORY_BACKLOG, STORY_SELECTED)]
		if not ready:
			return CommandIntent(
				action="local",
				user_message_text=text,
				ai_instruction_text="There are no stories in the backlog to plan with. Generate some stories from addressed questions first.",
			)
		return CommandIntent(
			action="single",
			user_message_text=text,
			ai_instruction_text=prompts.sprint_planning_instruction(ready),
			target_persona=constants.ROLE_SCRUM_LEADER,
		)

	def _breakdown(self, args: List[str], text: str) -> CommandIntent:
		if not args:
			return self._error(text, "Please provide the ID prefix of the story to break down. e.g., /breakdown 1a2b3c")
		if not self._store.topic:
			return self._error(text, NO_TOPIC_MESSAGE)
		story = resolve_prefix(self._store.stories(), args[0], "Story")
		if story.status not in DERIVED_STORY_STATUSES and story.status != STORY_SELECTED:
			self._store.update_story(story.id, status=STORY_SELECTED)
		return CommandIntent(
			action="round_robin",
			user_message_text=text,
			ai_instruction_text=text,
			breakdown_story_id=story.id,
		)

	def _questions(self, args: List[str], text: str) -> CommandIntent:
		if args and args[0].lower() == "discuss":
			if len(args) < 2:
				return self._error(text, "Please provide the ID prefix of the question to discuss.")
			if not self._store.topic:
				return self._error(text, NO_TOPIC_MESSAGE)
			question = resolve_prefix(self._store.questions(), args[1], "Question")
			self._store.set_question_status(question.id, QUESTION_ADDRESSING)
			return CommandIntent(
				action="round_robin",
				user_message_text=text,
				ai_instruction_text=prompts.discuss_question_instruction(question),
				question_id=question.id,
			)
		return CommandIntent(
			action="local",
			user_message_text=text,
			ai_instruction_text=(
				"Tracked questions are managed through the questions API. Use '/questions discuss {id}' "
				"to focus the discussion on one of them."
			),
		)

	def _stories(self, args: List[str], text: str) -> CommandIntent:
		addressed = [question for question in self._store.questions() if question.status == QUESTION_ADDRESSED]
		if args:
			needle = " ".join(args).lower()
			addressed = [question for question in addressed if needle in question.text.lower()]
		if not addressed:
			return CommandIntent(
				action="local",
				user_message_text=text,
				ai_instruction_text=(
					"No 'Addressed' questions to generate stories from. Mark some questions as addressed first."
				),
			)
		return CommandIntent(
			action="single",
			user_message_text=text,
			ai_instruction_text=prompts.stories_from_questions_instruction(addressed),
			target_persona=constants.ROLE_SCRUM_LEADER,
		)


def help_text() -> str:
	lines = ["Available commands:"]
	for command in AVAILABLE_COMMANDS:
		usage = f"{command.name} {command.arguments}".strip()
		lines.append(f"{usage}: {command.description} (e.g. {command.example})")
	return "\n".join(lines)


def requests_search(user_text: Optional[str]) -> bool:
	"""True for the factual-lookup commands that may use provider web search."""
	if not user_text:
		return False
	parts = user_text.strip().split()
	return bool(parts) and parts[0].lower() in {"/ask", "/search"}
