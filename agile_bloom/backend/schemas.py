from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from agile_bloom.backend import constants


class ApiError(BaseModel):
	model_config = ConfigDict(extra="forbid")

	code: str
	message: str
	evidence: List[str] = Field(default_factory=list)


class ApiEnvelope(BaseModel):
	model_config = ConfigDict(extra="allow")

	ok: bool
	generated_at: str
	request_id: Optional[str] = None
	data: Optional[Dict[str, Any]] = None
	error: Optional[ApiError] = None


class ModelParametersPayload(BaseModel):
	model_config = ConfigDict(extra="forbid")

	temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
	top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)
	top_k: Optional[int] = Field(default=None, ge=1)
	max_length: Optional[int] = Field(default=None, ge=1)
	thinking_budget: Optional[int] = Field(default=None, ge=0)


class AttachmentPayload(BaseModel):
	model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

	name: str = Field(..., min_length=1)
	mime_type: str = Field(..., min_length=1)
	size: int = Field(..., ge=0, le=constants.MAX_ATTACHMENT_BYTES)
	text_content: Optional[str] = None
	base64_data: Optional[str] = None

	@model_validator(mode="after")
	def _one_body(self) -> "AttachmentPayload":
		if (self.text_content is None) == (self.base64_data is None):
			raise ValueError("Provide exactly one of text_content or base64_data.")
		if self.base64_data is not None and self.mime_type not in constants.SUPPORTED_IMAGE_MIME_TYPES:
			raise ValueError(f"Unsupported image type: {self.mime_type}")
		return self


class DiscussionStartRequest(BaseModel):
	model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

	topic: str = Field(..., min_length=1, description="Discussion topic.")
	roster: List[str] = Field(default_factory=lambda: list(constants.DEFAULT_ROSTER))
	context: str = Field(default="", description="Optional context shown to every persona.")
	provider: Optional[str] = None
	model: Optional[str] = Field(default=None, description="Model id from /api/models.")
	api_keys: Dict[str, str] = Field(default_factory=dict)
	parameters: Optional[ModelParametersPayload] = None
	num_thoughts: Optional[int] = Field(default=None, ge=0, le=5)


class DiscussionSubmitRequest(BaseModel):
	model_config = ConfigDict(extra="forbid")

	text: str = Field(..., description="Free text or a slash command.")
	attachment: Optional[AttachmentPayload] = None


class QuestionStatusUpdate(BaseModel):
	model_config = ConfigDict(extra="forbid")

	status: Literal["Open", "Addressing", "Addressed", "Dismissed"]


class BulkQuestionStatusUpdate(BaseModel):
	model_config = ConfigDict(extra="forbid")

	question_ids: List[str] = Field(..., min_length=1)
	status: Literal["Open", "Addressing", "Addressed", "Dismissed"]


class TaskCreate(BaseModel):
	model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

	description: str = Field(..., min_length=1)
	assigned_persona: Optional[str] = None
	story_id: Optional[str] = None
	priority: Literal["Low", "Medium", "High"] = "Medium"


class TaskUpdate(BaseModel):
	model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

	description: Optional[str] = Field(default=None, min_length=1)
	status: Optional[Literal["To Do", "In Progress", "Done"]] = None
	priority: Optional[Literal["Low", "Medium", "High"]] = None
	assigned_persona: Optional[str] = None
	story_id: Optional[str] = None
	order: Optional[float] = None


class StoryCreate(BaseModel):
	model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

	user_story: str = Field(..., min_length=1)
	benefit: str = Field(..., min_length=1)
	acceptance_criteria: List[str] = Field(default_factory=list)
	priority: Literal["Low", "Medium", "High", "Critical"] = "Medium"
	sprint_points: Optional[int] = Field(default=None, ge=0)


class StoryUpdate(BaseModel):
	model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

	user_story: Optional[str] = Field(default=None, min_length=1)
	benefit: Optional[str] = Field(default=None, min_length=1)
	acceptance_criteria: Optional[List[str]] = None
	status: Optional[Literal["Backlog", "Selected for Sprint", "In Progress", "Done", "Rejected"]] = None
	priority: Optional[Literal["Low", "Medium", "High", "Critical"]] = None
	sprint_points: Optional[int] = Field(default=None, ge=0)


class AutoModeUpdate(BaseModel):
	model_config = ConfigDict(extra="forbid")

	enabled: bool
	delay_seconds: Optional[float] = Field(
		default=None,
		ge=constants.MIN_AUTO_MODE_DELAY_SECONDS,
		le=constants.MAX_AUTO_MODE_DELAY_SECONDS,
	)


class RosterUpdate(BaseModel):
	model_config = ConfigDict(extra="forbid")

	roster: List[str] = Field(..., min_length=1)


class RepositoryContextRequest(BaseModel):
	model_config = ConfigDict(extra="forbid")

	text: str = Field(..., min_length=1)
	file_count: int = Field(..., ge=0)


class CompileDocsRequest(BaseModel):
	model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

	persona: str = Field(..., min_length=1)


class SessionImportRequest(BaseModel):
	model_config = ConfigDict(extra="forbid")

	messages: List[Any]


class PersonaCreate(BaseModel):
	model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

	name: str = Field(..., min_length=1, max_length=60)
	glyph: str = Field(..., min_length=1, max_length=16)
	description: str = Field(..., min_length=1)
	bg_color: str = "bg-[#333e48]"
	text_color: str = "text-gray-200"
