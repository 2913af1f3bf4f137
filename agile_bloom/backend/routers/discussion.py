from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Query, Request

from agile_bloom.backend.engine.commands import AVAILABLE_COMMANDS, help_text
from agile_bloom.backend.engine.engine import DiscussionEngine
from agile_bloom.backend.engine.errors import EngineError
from agile_bloom.backend.engine.types import Attachment, DiscussionMessage
from agile_bloom.backend.response import engine_state, http_error, success_response
from agile_bloom.backend.schemas import (
	ApiEnvelope,
	AutoModeUpdate,
	BulkQuestionStatusUpdate,
	CompileDocsRequest,
	DiscussionStartRequest,
	DiscussionSubmitRequest,
	QuestionStatusUpdate,
	RepositoryContextRequest,
	RosterUpdate,
	SessionImportRequest,
	StoryCreate,
	StoryUpdate,
	TaskCreate,
	TaskUpdate,
)
from agile_bloom.backend.services import discussion_service


router = APIRouter(prefix="/api/discussion", tags=["discussion"])

QuestionStatusParam = Optional[Literal["Open", "Addressing", "Addressed", "Dismissed"]]
TaskStatusParam = Optional[Literal["To Do", "In Progress", "Done"]]
StoryStatusParam = Optional[Literal["Backlog", "Selected for Sprint", "In Progress", "Done", "Rejected"]]


def _session_id(request: Request) -> str:
	return request.state.session_id


def _engine(request: Request) -> DiscussionEngine:
	return discussion_service.ensure_session(_session_id(request))


def _turn(request: Request, engine: DiscussionEngine, messages: List[DiscussionMessage]) -> Dict[str, Any]:
	return success_response(
		request=request,
		data={
			"session_id": _session_id(request),
			"messages": [message.as_dict() for message in messages],
			"state": engine_state(engine),
		},
	)


@router.post("/start", response_model=ApiEnvelope)
async def start(request: Request, payload: DiscussionStartRequest):
	engine = _engine(request)
	try:
		if payload.model is not None or payload.provider is not None or payload.api_keys:
			engine.configure(
				provider=payload.provider,
				model=payload.model,
				api_keys=payload.api_keys,
			)
		engine.configure(
			parameters=payload.parameters.model_dump() if payload.parameters is not None else None,
			num_thoughts=payload.num_thoughts,
		)
		messages = await engine.start(payload.topic, roster=payload.roster, context=payload.context)
	except EngineError as exc:
		raise http_error(exc) from exc
	return _turn(request, engine, messages)


@router.post("/submit", response_model=ApiEnvelope)
async def submit(request: Request, payload: DiscussionSubmitRequest):
	engine = _engine(request)
	attachment = None
	if payload.attachment is not None:
		attachment = Attachment(**payload.attachment.model_dump())
	try:
		messages = await engine.submit(payload.text, attachment)
	except EngineError as exc:
		raise http_error(exc) from exc
	return _turn(request, engine, messages)


@router.get("/state", response_model=ApiEnvelope)
def state(request: Request):
	engine = _engine(request)
	return success_response(
		request=request,
		data={"session_id": _session_id(request), "state": engine_state(engine)},
	)


@router.get("/commands", response_model=ApiEnvelope)
def commands(request: Request):
	return success_response(
		request=request,
		data={
			"commands": [
				{"name": item.name, "arguments": item.arguments, "description": item.description, "example": item.example}
				for item in AVAILABLE_COMMANDS
			],
			"help_text": help_text(),
		},
	)


@router.delete("", response_model=ApiEnvelope)
def clear(request: Request):
	engine = _engine(request)
	try:
		engine.clear()
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"state": engine_state(engine)})


@router.delete("/session", response_model=ApiEnvelope)
def end_session(request: Request):
	session_id = _session_id(request)
	dropped = discussion_service.drop_session(session_id)
	return success_response(request=request, data={"session_id": session_id, "dropped": dropped})


@router.put("/roster", response_model=ApiEnvelope)
def set_roster(request: Request, payload: RosterUpdate):
	engine = _engine(request)
	try:
		roster = engine.set_roster(payload.roster)
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"roster": roster})


@router.delete("/roster/{name}", response_model=ApiEnvelope)
def deselect_persona(request: Request, name: str):
	engine = _engine(request)
	try:
		roster = engine.deselect_persona(name)
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"roster": roster})


# -- questions ---------------------------------------------------------------


@router.patch("/questions/{question_id}", response_model=ApiEnvelope)
async def update_question(request: Request, question_id: str, payload: QuestionStatusUpdate):
	engine = _engine(request)
	try:
		changed = await engine.update_question_status(question_id, payload.status)
		question = engine.store.get_question(question_id)
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(
		request=request,
		data={"changed": changed, "question": question.as_dict(), "state": engine_state(engine)},
	)


@router.post("/questions/bulk", response_model=ApiEnvelope)
async def bulk_update_questions(request: Request, payload: BulkQuestionStatusUpdate):
	engine = _engine(request)
	try:
		result = await engine.bulk_update_questions(payload.question_ids, payload.status)
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"result": result.as_dict(), "state": engine_state(engine)})


@router.delete("/questions/{question_id}", response_model=ApiEnvelope)
def remove_question(request: Request, question_id: str):
	engine = _engine(request)
	try:
		engine.remove_question(question_id)
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"removed": question_id})


@router.delete("/questions", response_model=ApiEnvelope)
def clear_questions(request: Request, status: QuestionStatusParam = Query(default=None)):
	engine = _engine(request)
	return success_response(request=request, data={"removed": engine.clear_questions(status)})


# -- tasks -------------------------------------------------------------------


@router.post("/tasks", response_model=ApiEnvelope)
def add_task(request: Request, payload: TaskCreate):
	engine = _engine(request)
	try:
		task = engine.add_task(
			payload.description,
			assigned_persona=payload.assigned_persona,
			story_id=payload.story_id,
			priority=payload.priority,
		)
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"task": task.as_dict()})


@router.patch("/tasks/{task_id}", response_model=ApiEnvelope)
def update_task(request: Request, task_id: str, payload: TaskUpdate):
	engine = _engine(request)
	try:
		task = engine.update_task(task_id, **payload.model_dump(exclude_unset=True))
		story = engine.store.get_story(task.story_id).as_dict() if task.story_id else None
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"task": task.as_dict(), "story": story})


@router.delete("/tasks/{task_id}", response_model=ApiEnvelope)
def remove_task(request: Request, task_id: str):
	engine = _engine(request)
	try:
		engine.remove_task(task_id)
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"removed": task_id})


@router.delete("/tasks", response_model=ApiEnvelope)
def clear_tasks(request: Request, status: TaskStatusParam = Query(default=None)):
	engine = _engine(request)
	return success_response(request=request, data={"removed": engine.clear_tasks(status)})


# -- stories -----------------------------------------------------------------


@router.post("/stories", response_model=ApiEnvelope)
def add_story(request: Request, payload: StoryCreate):
	engine = _engine(request)
	story = engine.add_story(**payload.model_dump())
	return success_response(request=request, data={"story": story.as_dict()})


@router.patch("/stories/{story_id}", response_model=ApiEnvelope)
def update_story(request: Request, story_id: str, payload: StoryUpdate):
	engine = _engine(request)
	try:
		story = engine.update_story(story_id, **payload.model_dump(exclude_unset=True))
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"story": story.as_dict()})


@router.delete("/stories/{story_id}", response_model=ApiEnvelope)
def remove_story(request: Request, story_id: str):
	engine = _engine(request)
	try:
		engine.remove_story(story_id)
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"removed": story_id})


@router.delete("/stories", response_model=ApiEnvelope)
def clear_stories(request: Request, status: StoryStatusParam = Query(default=None)):
	engine = _engine(request)
	return success_response(request=request, data={"removed": engine.clear_stories(status)})


# -- generated artifacts -----------------------------------------------------


@router.post("/generate-tasks", response_model=ApiEnvelope)
async def generate_tasks(request: Request):
	engine = _engine(request)
	try:
		messages = await engine.generate_tasks()
	except EngineError as exc:
		raise http_error(exc) from exc
	return _turn(request, engine, messages)


@router.post("/compile-docs", response_model=ApiEnvelope)
async def compile_docs(request: Request, payload: CompileDocsRequest):
	engine = _engine(request)
	try:
		messages = await engine.compile_documentation(payload.persona)
	except EngineError as exc:
		raise http_error(exc) from exc
	return _turn(request, engine, messages)


@router.post("/summary", response_model=ApiEnvelope)
async def refresh_summary(request: Request):
	engine = _engine(request)
	try:
		summary = await engine.refresh_narrative_summary()
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"narrative_summary": summary or engine.store.narrative_summary})


# -- lifecycle ---------------------------------------------------------------


@router.put("/auto-mode", response_model=ApiEnvelope)
async def auto_mode(request: Request, payload: AutoModeUpdate):
	engine = _engine(request)
	engine.set_auto_mode(payload.enabled, delay_seconds=payload.delay_seconds)
	return success_response(
		request=request,
		data={
			"auto_mode_enabled": engine.store.auto_mode_enabled,
			"auto_mode_delay_seconds": engine.store.auto_mode_delay_seconds,
			"auto_continue_pending": engine.auto_continue.pending,
		},
	)


@router.post("/quota/clear", response_model=ApiEnvelope)
def clear_quota(request: Request):
	engine = _engine(request)
	engine.clear_quota_block()
	return success_response(request=request, data={"is_quota_exceeded": engine.store.is_quota_exceeded})


@router.put("/repository-context", response_model=ApiEnvelope)
def set_repository_context(request: Request, payload: RepositoryContextRequest):
	engine = _engine(request)
	engine.set_repository_context(payload.text, payload.file_count)
	return success_response(request=request, data={"repository_file_count": engine.store.repository_file_count})


@router.delete("/repository-context", response_model=ApiEnvelope)
def clear_repository_context(request: Request):
	engine = _engine(request)
	engine.clear_repository_context()
	return success_response(request=request, data={"repository_file_count": engine.store.repository_file_count})


@router.get("/export", response_model=ApiEnvelope)
def export_session(request: Request):
	engine = _engine(request)
	return success_response(request=request, data={"messages": engine.export_session()})


@router.post("/import", response_model=ApiEnvelope)
def import_session(request: Request, payload: SessionImportRequest):
	engine = _engine(request)
	try:
		message = engine.import_session(payload.messages)
	except EngineError as exc:
		raise http_error(exc) from exc
	return success_response(request=request, data={"message": message.as_dict(), "state": engine_state(engine)})
