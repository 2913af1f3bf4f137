from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agile_bloom.backend import constants
from agile_bloom.backend.engine.errors import StructuralValidationError, TransientProviderError
from agile_bloom.backend.engine.types import STORY_PRIORITIES, Citation, Persona


logger = logging.getLogger(__name__)

NON_TEXT_MESSAGE_PLACEHOLDER = "[AI returned a non-text response message]"

_FENCE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?\s*```$", re.DOTALL)


class GeneratedTask(BaseModel):
	model_config = ConfigDict(extra="forbid")

	description: str
	assigned_to: Optional[str] = None


class GeneratedStory(BaseModel):
	model_config = ConfigDict(extra="forbid")

	user_story: str
	benefit: str
	acceptance_criteria: List[str] = Field(default_factory=list)
	priority: Literal["Low", "Medium", "High", "Critical"] = "Medium"
	sprint_points: Optional[int] = None


class ParsedResponse(BaseModel):
	model_config = ConfigDict(extra="forbid")

	persona_name: str
	glyph: str = ""
	message: str
	thoughts: List[str] = Field(default_factory=list)
	work: Optional[str] = None
	memory_entry: Optional[str] = None
	citations: List[Citation] = Field(default_factory=list)
	tasks: List[GeneratedTask] = Field(default_factory=list)
	stories: List[GeneratedStory] = Field(default_factory=list)
	is_command_response: Optional[bool] = None
	warnings: List[str] = Field(default_factory=list)
	reattributed_from: Optional[str] = None

	@property
	def was_reattributed(self) -> bool:
		return self.reattributed_from is not None


def extract_payload(raw: str) -> Dict[str, Any]:
	"""Pull the JSON object out of a raw model reply.

	Decode failures raise ``TransientProviderError`` so the caller retries; a
	decoded value that is not an object is a structural failure.
	"""
	candidate = (raw or "").strip()
	if not candidate:
		raise TransientProviderError("Provider returned an empty response.")
	fenced = _FENCE.match(candidate)
	if fenced:
		candidate = fenced.group(1).strip()
	start = candidate.find("{")
	end = candidate.rfind("}")
	if start == -1 or end == -1 or end <= start:
		raise TransientProviderError("Provider returned invalid JSON content.")
	try:
		parsed = json.loads(candidate[start : end + 1])
	except json.JSONDecodeError as exc:
		raise TransientProviderError(f"Failed to parse JSON response from provider: {exc.msg}") from exc
	if not isinstance(parsed, dict):
		raise StructuralValidationError("Provider returned an unexpected payload shape.")
	return parsed


def _string_list(value: Any) -> List[str]:
	if isinstance(value, str):
		return [value.strip()] if value.strip() else []
	if not isinstance(value, list):
		return []
	result: List[str] = []
	for item in value:
		if isinstance(item, str) and item.strip():
			result.append(item.strip())
	return result


def _coerce_tasks(value: Any, warnings: List[str]) -> List[GeneratedTask]:
	if not isinstance(value, list):
		return []
	tasks: List[GeneratedTask] = []
	for item in value:
		if not isinstance(item, dict) or not isinstance(item.get("description"), str) or not item["description"].strip():
			logger.warning("dropping generated task with an invalid description: %r", item)
			warnings.append("dropped task without a description")
			continue
		assigned = item.get("assignedTo", item.get("assigned_to"))
		tasks.append(
			GeneratedTask(
				description=item["description"].strip(),
				assigned_to=assigned.strip() if isinstance(assigned, str) and assigned.strip() else None,
			)
		)
	return tasks


def _coerce_sprint_points(value: Any) -> Optional[int]:
	if isinstance(value, bool):
		return None
	if isinstance(value, (int, float)):
		return int(value)
	if isinstance(value, str) and value.strip().isdigit():
		return int(value.strip())
	return None


def _coerce_stories(value: Any, warnings: List[str]) -> List[GeneratedStory]:
	if not isinstance(value, list):
		return []
	stories: List[GeneratedStory] = []
	for item in value:
		if not isinstance(item, dict):
			continue
		user_story = item.get("userStory", item.get("user_story"))
		benefit = item.get("benefit")
		criteria = item.get("acceptanceCriteria", item.get("acceptance_criteria"))
		if not isinstance(user_story, str) or not user_story.strip() or not isinstance(benefit, str) or not benefit.strip() or not criteria:
			logger.warning("dropping incomplete generated story: %r", item)
			warnings.append("dropped incomplete story")
			continue
		if isinstance(criteria, str):
			criteria = criteria.split("\n")
		priority = item.get("priority")
		stories.append(
			GeneratedStory(
				user_story=user_story.strip(),
				benefit=benefit.strip(),
				acceptance_criteria=_string_list(criteria),
				priority=priority if priority in STORY_PRIORITIES else "Medium",
				sprint_points=_coerce_sprint_points(item.get("sprintPoints", item.get("sprint_points"))),
			)
		)
	return stories


def _resolve_persona(name: str, allowed: Mapping[str, Persona]) -> Optional[Persona]:
	lowered = name.strip().lower()
	for persona in allowed.values():
		if persona.name.lower() == lowered:
			return persona
	return None


def recover(
	payload: Mapping[str, Any],
	*,
	allowed: Mapping[str, Persona],
	system: Persona,
	citations: Optional[List[Citation]] = None,
) -> ParsedResponse:
	"""Validate a decoded payload and repair it in place.

	``allowed`` holds the personas that may speak: the active roster plus the
	system persona. An unknown speaker is reattributed to ``system`` with a
	warning rather than discarded.
	"""
	raw_name = payload.get("expert", payload.get("personaName"))
	if not isinstance(raw_name, str) or not raw_name.strip():
		raise StructuralValidationError("Provider response is missing the 'expert' field.")

	warnings: List[str] = []
	reattributed_from: Optional[str] = None
	persona = _resolve_persona(raw_name, allowed)
	if persona is None:
		logger.warning("reattributing reply from unknown persona %r to %s", raw_name, system.name)
		warnings.append(f"reattributed: unknown expert '{raw_name.strip()}'")
		reattributed_from = raw_name.strip()
		persona = system

	tasks = _coerce_tasks(payload.get("tasks"), warnings)
	stories = _coerce_stories(payload.get("stories"), warnings)

	message = payload.get("message")
	if not isinstance(message, str):
		logger.warning("reply message from %s is not text; substituting a summary", persona.name)
		raw_tasks = payload.get("tasks")
		raw_stories = payload.get("stories")
		if isinstance(raw_tasks, list) and raw_tasks:
			message = f"Generated {len(raw_tasks)} task(s)."
		elif isinstance(raw_stories, list) and raw_stories:
			message = f"Generated {len(raw_stories)} story(s)."
		else:
			message = NON_TEXT_MESSAGE_PLACEHOLDER
		warnings.append("message was not text")

	work = payload.get("work")
	if work is not None and not isinstance(work, str):
		logger.warning("reply work from %s is not text; serializing it", persona.name)
		work = json.dumps(work, indent=2, ensure_ascii=False)
		warnings.append("work was serialized")
	if isinstance(work, str) and not work.strip():
		work = None

	memory_entry = payload.get("memoryEntry", payload.get("memory_entry"))
	if not isinstance(memory_entry, str) or not memory_entry.strip():
		memory_entry = None

	is_command_response = payload.get("isCommandResponse")
	try:
		return ParsedResponse(
			persona_name=persona.name,
			glyph=persona.glyph,
			message=message,
			thoughts=_string_list(payload.get("thoughts")),
			work=work,
			memory_entry=memory_entry.strip() if memory_entry else None,
			citations=list(citations or []),
			tasks=tasks,
			stories=stories,
			is_command_response=is_command_response if isinstance(is_command_response, bool) else None,
			warnings=warnings,
			reattributed_from=reattributed_from,
		)
	except ValidationError as exc:
		raise StructuralValidationError("Provider returned schema-incompatible content.") from exc


def allowed_personas(roster: List[Persona], personas: Mapping[str, Persona]) -> Dict[str, Persona]:
	allowed = {persona.name: persona for persona in roster}
	if constants.ROLE_SYSTEM in personas:
		allowed[constants.ROLE_SYSTEM] = personas[constants.ROLE_SYSTEM]
	return allowed
