from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request

from agile_bloom.backend.engine.engine import DiscussionEngine
from agile_bloom.backend.engine.errors import EngineError, ImportValidationError


def now_iso() -> str:
	return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _request_id(request: Optional[Request]) -> Optional[str]:
	if request is None:
		return None
	return getattr(request.state, "request_id", None)


def success_response(
	*,
	request: Optional[Request] = None,
	data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
	payload: Dict[str, Any] = {
		"ok": True,
		"generated_at": now_iso(),
	}
	request_id = _request_id(request)
	if request_id:
		payload["request_id"] = request_id
	if data is not None:
		payload["data"] = data
	return payload


def error_response(
	*,
	code: str,
	message: str,
	request: Optional[Request] = None,
	evidence: Optional[List[str]] = None,
) -> Dict[str, Any]:
	payload: Dict[str, Any] = {
		"ok": False,
		"generated_at": now_iso(),
		"error": {
			"code": code,
			"message": message,
			"evidence": evidence or [],
		},
	}
	request_id = _request_id(request)
	if request_id:
		payload["request_id"] = request_id
	return payload


def http_error(exc: EngineError) -> HTTPException:
	detail: Dict[str, Any] = {"code": exc.code, "message": exc.message}
	if isinstance(exc, ImportValidationError):
		detail["evidence"] = [f"index={exc.index}", f"field={exc.field}"]
	return HTTPException(status_code=exc.status_code, detail=detail)


def engine_state(engine: DiscussionEngine) -> Dict[str, Any]:
	"""Serializable view of one discussion session."""
	store = engine.store
	config = store.config
	state = store.snapshot()
	state["personas"] = [persona.as_dict() for persona in store.personas().values()]
	state["config"] = {
		"provider": config.provider,
		"model": config.model,
		"parameters": config.parameters.as_dict(),
		"num_thoughts": config.num_thoughts,
		"configured_keys": sorted(name for name, key in config.api_keys.items() if key),
	}
	state["busy"] = engine.busy
	state["auto_continue_pending"] = engine.auto_continue.pending
	return state
