from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from agile_bloom.backend import constants
from agile_bloom.backend.engine.errors import ImportValidationError
from agile_bloom.backend.engine.store import EntityStore
from agile_bloom.backend.engine.types import Citation, DiscussionMessage, Persona


logger = logging.getLogger(__name__)

DEFAULT_IMPORTED_TOPIC = "Imported Session"

_TOPIC_PATTERN = re.compile(r'topic: "([^"]+)"')
_PERSONA_STRING_FIELDS = ("name", "glyph", "bg_color", "text_color")


def export_session(store: EntityStore) -> List[Dict[str, object]]:
	return [message.as_dict() for message in store.messages()]


def _require(condition: bool, index: int, field: str, message: str) -> None:
	if not condition:
		raise ImportValidationError(index=index, field=field, message=message)


def _is_number(value: Any) -> bool:
	return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_citations(raw: Any, index: int) -> Optional[Tuple[Citation, ...]]:
	if raw is None:
		return None
	_require(isinstance(raw, list), index, "citations", "must be a list or null")
	citations: List[Citation] = []
	for item in raw:
		_require(
			isinstance(item, dict) and isinstance(item.get("uri"), str) and isinstance(item.get("title"), str),
			index,
			"citations",
			"entries must be objects with string 'uri' and 'title'",
		)
		citations.append(Citation(uri=item["uri"], title=item["title"]))
	return tuple(citations) or None


def parse_record(record: Any, index: int) -> DiscussionMessage:
	"""Validate one exported message and rebuild it.

	Raises ``ImportValidationError`` naming the first offending field.
	"""
	_require(isinstance(record, dict), index, "record", "must be an object")
	_require(isinstance(record.get("id"), str), index, "id", "must be a string")
	_require(isinstance(record.get("text"), str), index, "text", "must be a string")
	_require(_is_number(record.get("timestamp")), index, "timestamp", "must be a number")

	persona = record.get("persona")
	_require(isinstance(persona, dict), index, "persona", "must be an object")
	for key in _PERSONA_STRING_FIELDS:
		_require(isinstance(persona.get(key), str), index, f"persona.{key}", "must be a string")

	thoughts = record.get("thoughts", [])
	_require(
		isinstance(thoughts, list) and all(isinstance(item, str) for item in thoughts),
		index,
		"thoughts",
		"must be a list of strings",
	)
	work = record.get("work")
	_require(work is None or isinstance(work, str), index, "work", "must be a string or null")
	for flag in ("is_command_response", "is_error"):
		_require(isinstance(record.get(flag, False), bool), index, flag, "must be a boolean")

	return DiscussionMessage(
		id=record["id"],
		persona=Persona.from_dict(persona),
		text=record["text"],
		timestamp=float(record["timestamp"]),
		thoughts=tuple(thoughts),
		work=work,
		is_command_response=record.get("is_command_response", False),
		is_error=record.get("is_error", False),
		citations=_parse_citations(record.get("citations"), index),
	)


def recover_topic(messages: Sequence[DiscussionMessage]) -> str:
	for message in messages:
		if message.persona.name != constants.ROLE_SYSTEM or "Discussion started on topic" not in message.text:
			continue
		match = _TOPIC_PATTERN.search(message.text)
		if match:
			return match.group(1)
	return DEFAULT_IMPORTED_TOPIC


def _speaking_personas(messages: Sequence[DiscussionMessage], known: Mapping[str, Persona]) -> Tuple[List[Persona], List[str]]:
	personas: List[Persona] = []
	roster: List[str] = []
	for message in messages:
		name = message.persona.name
		if name in constants.RESERVED_ROLES or name in roster:
			continue
		roster.append(name)
		if name not in known:
			personas.append(Persona.from_dict({**message.persona.as_dict(), "is_custom": True}))
	if constants.ROLE_SCRUM_LEADER not in roster:
		roster.append(constants.ROLE_SCRUM_LEADER)
	return personas, roster


def import_session(store: EntityStore, records: Any) -> DiscussionMessage:
	"""Replace the store's discussion with ``records``.

	The batch is validated completely before anything is touched; on success
	tracked items, memory and repository context are reset and a System message
	reports the import.
	"""
	if not isinstance(records, list):
		raise ImportValidationError(index=None, field="records", message="must be a list of messages")
	messages = [parse_record(record, index) for index, record in enumerate(records)]
	topic = recover_topic(messages)
	personas, roster = _speaking_personas(messages, store.personas())
	store.replace_discussion(messages, topic=topic, personas=personas, roster=roster)
	logger.info("imported %d message(s) for topic %r", len(messages), topic)
	return store.add_message(
		constants.ROLE_SYSTEM,
		f'Successfully imported {len(messages)} messages. Topic set to "{topic}". '
		"All tracked items (questions, tasks, stories) have been cleared.",
	)
