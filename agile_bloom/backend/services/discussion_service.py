from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Dict, List, Optional

from agile_bloom.backend.adapters.sqlite_adapter import PersonaRepository
from agile_bloom.backend.engine.config import load_settings, persona_db_path, session_ttl_seconds
from agile_bloom.backend.engine.engine import DiscussionEngine
from agile_bloom.backend.engine.errors import EntityNotFoundError, InvalidTransitionError
from agile_bloom.backend.engine.store import DEFAULT_PERSONAS
from agile_bloom.backend.engine.types import Persona


logger = logging.getLogger(__name__)


@dataclass
class DiscussionSession:
	session_id: str
	engine: DiscussionEngine
	updated_at: datetime


_STORE: Dict[str, DiscussionSession] = {}
_LOCK = Lock()
_REPOSITORIES: Dict[str, PersonaRepository] = {}
_REPOSITORY_LOCK = Lock()


def _now() -> datetime:
	return datetime.now(timezone.utc)


def persona_repository() -> PersonaRepository:
	path = persona_db_path()
	with _REPOSITORY_LOCK:
		repository = _REPOSITORIES.get(path)
		if repository is None:
			repository = PersonaRepository(path)
			_REPOSITORIES[path] = repository
		return repository


def _build_engine() -> DiscussionEngine:
	engine = DiscussionEngine(settings=load_settings())
	for persona in persona_repository().list():
		try:
			engine.add_persona(persona)
		except InvalidTransitionError as exc:
			logger.warning("skipping stored persona %r: %s", persona.name, exc.message)
	return engine


def _evict_expired_locked() -> None:
	now = _now()
	ttl = timedelta(seconds=session_ttl_seconds())
	expired: List[str] = []
	for session_id, session in _STORE.items():
		if session.engine.busy:
			continue
		if now - session.updated_at > ttl:
			expired.append(session_id)
	for session_id in expired:
		session = _STORE.pop(session_id)
		session.engine.auto_continue.cancel()
		logger.info("evicted idle discussion session %s", session_id)


def ensure_session(session_id: str) -> DiscussionEngine:
	with _LOCK:
		_evict_expired_locked()
		session = _STORE.get(session_id)
		if session is None:
			session = DiscussionSession(session_id=session_id, engine=_build_engine(), updated_at=_now())
			_STORE[session_id] = session
			logger.info("created discussion session %s", session_id)
		session.updated_at = _now()
		return session.engine


def drop_session(session_id: str) -> bool:
	with _LOCK:
		session = _STORE.pop(session_id, None)
	if session is None:
		return False
	session.engine.auto_continue.cancel()
	return True


def reset_sessions() -> None:
	with _LOCK:
		for session in _STORE.values():
			session.engine.auto_continue.cancel()
		_STORE.clear()
	with _REPOSITORY_LOCK:
		_REPOSITORIES.clear()


def list_personas(session_id: Optional[str] = None) -> List[Persona]:
	if session_id:
		return list(ensure_session(session_id).store.personas().values())
	return persona_repository().list()


def add_persona(persona: Persona, session_id: Optional[str] = None) -> Persona:
	"""Persist a custom persona and make it available to live sessions."""
	if persona.name in DEFAULT_PERSONAS:
		raise InvalidTransitionError(f"'{persona.name}' is a built-in persona.")
	if session_id:
		ensure_session(session_id)
	stored = replace(persona, is_custom=True)
	with _LOCK:
		engines = [session.engine for session in _STORE.values()]
	for engine in engines:
		engine.add_persona(stored)
	persona_repository().add(stored)
	return stored


def remove_persona(name: str) -> None:
	if name in DEFAULT_PERSONAS:
		raise InvalidTransitionError(f"Persona '{name}' is built in and cannot be removed.")
	removed = persona_repository().remove(name)
	with _LOCK:
		engines = [session.engine for session in _STORE.values()]
	for engine in engines:
		if name in engine.store.personas():
			engine.remove_persona(name)
			removed = True
	if not removed:
		raise EntityNotFoundError(f"Persona '{name}' not found.")
