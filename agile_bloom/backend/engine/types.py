from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple


ProviderName = Literal["Google", "Mistral", "OpenAI", "OpenRouter", "Local"]
IntentAction = Literal["local", "single", "round_robin", "error", "noop"]
QuestionStatus = Literal["Open", "Addressing", "Addressed", "Dismissed"]
StoryStatus = Literal["Backlog", "Selected for Sprint", "In Progress", "Done", "Rejected"]
TaskStatus = Literal["To Do", "In Progress", "Done"]
StoryPriority = Literal["Low", "Medium", "High", "Critical"]
TaskPriority = Literal["Low", "Medium", "High"]

QUESTION_OPEN: QuestionStatus = "Open"
QUESTION_ADDRESSING: QuestionStatus = "Addressing"
QUESTION_ADDRESSED: QuestionStatus = "Addressed"
QUESTION_DISMISSED: QuestionStatus = "Dismissed"
QUESTION_STATUSES = (QUESTION_OPEN, QUESTION_ADDRESSING, QUESTION_ADDRESSED, QUESTION_DISMISSED)

STORY_BACKLOG: StoryStatus = "Backlog"
STORY_SELECTED: StoryStatus = "Selected for Sprint"
STORY_IN_PROGRESS: StoryStatus = "In Progress"
STORY_DONE: StoryStatus = "Done"
STORY_REJECTED: StoryStatus = "Rejected"
STORY_STATUSES = (STORY_BACKLOG, STORY_SELECTED, STORY_IN_PROGRESS, STORY_DONE, STORY_REJECTED)
DERIVED_STORY_STATUSES = (STORY_IN_PROGRESS, STORY_DONE)

TASK_TODO: TaskStatus = "To Do"
TASK_IN_PROGRESS: TaskStatus = "In Progress"
TASK_DONE: TaskStatus = "Done"
TASK_STATUSES = (TASK_TODO, TASK_IN_PROGRESS, TASK_DONE)

STORY_PRIORITIES = ("Low", "Medium", "High", "Critical")
TASK_PRIORITIES = ("Low", "Medium", "High")


@dataclass(frozen=True)
class Persona:
	name: str
	glyph: str
	description: str
	bg_color: str = "bg-[#333e48]"
	text_color: str = "text-gray-200"
	is_custom: bool = False

	def as_dict(self) -> Dict[str, object]:
		return {
			"name": self.name,
			"glyph": self.glyph,
			"description": self.description,
			"bg_color": self.bg_color,
			"text_color": self.text_color,
			"is_custom": self.is_custom,
		}

	@classmethod
	def from_dict(cls, data: Dict[str, Any]) -> "Persona":
		return cls(
			name=str(data["name"]),
			glyph=str(data.get("glyph", "")),
			description=str(data.get("description", "")),
			bg_color=str(data.get("bg_color", "bg-[#333e48]")),
			text_color=str(data.get("text_color", "text-gray-200")),
			is_custom=bool(data.get("is_custom", False)),
		)


@dataclass(frozen=True)
class Citation:
	uri: str
	title: str

	def as_dict(self) -> Dict[str, str]:
		return {"uri": self.uri, "title": self.title}


@dataclass(frozen=True)
class DiscussionMessage:
	id: str
	persona: Persona
	text: str
	timestamp: float
	thoughts: Tuple[str, ...] = ()
	work: Optional[str] = None
	is_command_response: bool = False
	is_error: bool = False
	citations: Optional[Tuple[Citation, ...]] = None

	@property
	def persona_name(self) -> str:
		return self.persona.name

	def as_dict(self) -> Dict[str, object]:
		return {
			"id": self.id,
			"persona": self.persona.as_dict(),
			"text": self.text,
			"thoughts": list(self.thoughts),
			"work": self.work,
			"is_command_response": self.is_command_response,
			"is_error": self.is_error,
			"citations": [citation.as_dict() for citation in self.citations] if self.citations else None,
			"timestamp": self.timestamp,
		}


@dataclass
class TrackedQuestion:
	id: str
	text: str
	origin_persona: str
	origin_glyph: str
	origin_message_id: str
	timestamp: float
	status: QuestionStatus = QUESTION_OPEN

	def as_dict(self) -> Dict[str, object]:
		return {
			"id": self.id,
			"text": self.text,
			"origin_persona": self.origin_persona,
			"origin_glyph": self.origin_glyph,
			"origin_message_id": self.origin_message_id,
			"status": self.status,
			"timestamp": self.timestamp,
		}


@dataclass
class TrackedStory:
	id: str
	user_story: str
	benefit: str
	created_by: str
	timestamp: float
	topic_context: str
	acceptance_criteria: List[str] = field(default_factory=list)
	status: StoryStatus = STORY_BACKLOG
	priority: StoryPriority = "Medium"
	sprint_points: Optional[int] = None
	origin_question_id: Optional[str] = None

	def as_dict(self) -> Dict[str, object]:
		return {
			"id": self.id,
			"user_story": self.user_story,
			"benefit": self.benefit,
			"acceptance_criteria": list(self.acceptance_criteria),
			"status": self.status,
			"priority": self.priority,
			"sprint_points": self.sprint_points,
			"created_by": self.created_by,
			"origin_question_id": self.origin_question_id,
			"topic_context": self.topic_context,
			"timestamp": self.timestamp,
		}


@dataclass
class TrackedTask:
	id: str
	description: str
	created_by: str
	timestamp: float
	order: float
	topic_context: str
	status: TaskStatus = TASK_TODO
	priority: TaskPriority = "Medium"
	assigned_persona: Optional[str] = None
	story_id: Optional[str] = None

	def as_dict(self) -> Dict[str, object]:
		return {
			"id": self.id,
			"description": self.description,
			"status": self.status,
			"priority": self.priority,
			"order": self.order,
			"assigned_persona": self.assigned_persona,
			"created_by": self.created_by,
			"story_id": self.story_id,
			"topic_context": self.topic_context,
			"timestamp": self.timestamp,
		}


@dataclass
class ModelParameters:
	temperature: Optional[float] = None
	top_p: Optional[float] = None
	top_k: Optional[int] = None
	max_length: Optional[int] = None
	thinking_budget: Optional[int] = None

	def as_dict(self) -> Dict[str, object]:
		return {
			"temperature": self.temperature,
			"top_p": self.top_p,
			"top_k": self.top_k,
			"max_length": self.max_length,
			"thinking_budget": self.thinking_budget,
		}


@dataclass
class SessionConfig:
	provider: ProviderName = "Local"
	model: str = "local-echo"
	api_keys: Dict[str, str] = field(default_factory=dict)
	parameters: ModelParameters = field(default_factory=ModelParameters)
	roster: List[str] = field(default_factory=list)
	topic: str = ""
	context: str = ""
	auto_mode_enabled: bool = False
	auto_mode_delay_seconds: float = 7
	num_thoughts: int = 1


@dataclass(frozen=True)
class Attachment:
	name: str
	mime_type: str
	size: int
	text_content: Optional[str] = None
	base64_data: Optional[str] = None

	@property
	def is_image(self) -> bool:
		return self.base64_data is not None and self.mime_type.startswith("image/")

	@property
	def is_text(self) -> bool:
		return self.text_content is not None


@dataclass
class CommandIntent:
	action: IntentAction
	user_message_text: str
	ai_instruction_text: Optional[str] = None
	target_persona: Optional[str] = None
	assigned_tasks_context: Optional[str] = None
	error_message: Optional[str] = None
	breakdown_story_id: Optional[str] = None
	question_id: Optional[str] = None


@dataclass(frozen=True)
class ProviderRequest:
	model: str
	system_prompt: str
	user_message: str
	parameters: ModelParameters
	api_key: str
	attachment: Optional[Attachment] = None
	use_search: bool = False


@dataclass
class ProviderReply:
	text: str
	citations: List[Citation] = field(default_factory=list)
