from __future__ import annotations

from fastapi import APIRouter, Request

from agile_bloom.backend.engine.errors import EngineError
from agile_bloom.backend.engine.types import Persona
from agile_bloom.backend.response import http_error, success_response
from agile_bloom.backend.schemas import ApiEnvelope, PersonaCreate
from agile_bloom.backend.services import discussion_service


router = APIRouter(prefix="/api/personas", tags=["personas"])


@router.get("", response_model=ApiEnvelope)
def list_personas(request: Request):
	personas = discussion_service.list_personas(request.state.session_id)
	return success_response(
		request=request,
		data={"personas": [persona.as_dict() for persona in personas]},
	)


@router.post("", response_model=ApiEnvelope)
def add_persona(request: Request, payload: PersonaCreate):
	try:
		persona = discussion_service.add_persona(
			Persona(**payload.model_dump(), is_custom=True),
			session_id=request.state.session_id,
		)
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"persona": persona.as_dict()})


@router.delete("/{name}", response_model=ApiEnvelope)
def remove_persona(request: Request, name: str):
	try:
		discussion_service.remove_persona(name)
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"removed": name})
