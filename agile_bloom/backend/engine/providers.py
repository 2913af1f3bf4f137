from __future__ import annotations

import asyncio
import base64
import json
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from agile_bloom.backend import constants
from agile_bloom.backend.engine.config import EngineSettings, provider_key_from_env
from agile_bloom.backend.engine.errors import ConfigurationError, QuotaExceededError, TransientProviderError
from agile_bloom.backend.engine.retry import Sleep, is_quota_error, with_retry
from agile_bloom.backend.engine.types import (
	Attachment,
	Citation,
	ModelParameters,
	Persona,
	ProviderName,
	ProviderReply,
	ProviderRequest,
	SessionConfig,
)
from agile_bloom.backend.engine.validation import ParsedResponse, extract_payload, recover


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParameterRange:
	id: str
	name: str
	minimum: float
	maximum: float
	step: float
	default: float

	def as_dict(self) -> Dict[str, object]:
		return {
			"id": self.id,
			"name": self.name,
			"min": self.minimum,
			"max": self.maximum,
			"step": self.step,
			"default": self.default,
		}


@dataclass(frozen=True)
class ModelInfo:
	id: str
	name: str
	provider: ProviderName
	description: str
	supports_search: bool = False
	supports_vision: bool = False
	parameters: Tuple[ParameterRange, ...] = field(default_factory=tuple)

	def as_dict(self) -> Dict[str, object]:
		return {
			"id": self.id,
			"name": self.name,
			"provider": self.provider,
			"description": self.description,
			"supports_search": self.supports_search,
			"supports_vision": self.supports_vision,
			"parameters": [parameter.as_dict() for parameter in self.parameters],
		}


def _temperature(maximum: float) -> ParameterRange:
	return ParameterRange("temperature", "Temperature", 0, maximum, 0.05 if maximum <= 1 else 0.1, 0.7)


MODEL_CATALOG: Tuple[ModelInfo, ...] = (
	ModelInfo(
		"gemini-2.5-flash",
		"Gemini 2.5 Flash",
		"Google",
		"A fast, versatile model with web search and a configurable thinking budget.",
		supports_search=True,
		supports_vision=True,
		parameters=(
			_temperature(1),
			ParameterRange("top_p", "Top-P", 0, 1, 0.05, 0.95),
			ParameterRange("top_k", "Top-K", 1, 100, 1, 40),
			ParameterRange("max_length", "Max Output Tokens", 100, 2048, 64, 1024),
			ParameterRange("thinking_budget", "Thinking Token Budget", 0, 1000, 10, 200),
		),
	),
	ModelInfo(
		"mistral-large-latest",
		"Mistral Large",
		"Mistral",
		"Top-tier reasoning capacities, for complex, specialized tasks.",
		parameters=(_temperature(1),),
	),
	ModelInfo(
		"mistral-medium-latest",
		"Mistral Medium",
		"Mistral",
		"A balanced model suitable for a variety of tasks.",
		parameters=(_temperature(1),),
	),
	ModelInfo(
		"gpt-4o",
		"GPT-4o",
		"OpenAI",
		"OpenAI's flagship multimodal model with strong vision capabilities.",
		supports_vision=True,
		parameters=(_temperature(2), ParameterRange("top_p", "Top-P", 0, 1, 0.05, 1)),
	),
	ModelInfo(
		"gpt-3.5-turbo",
		"GPT-3.5 Turbo",
		"OpenAI",
		"A fast and capable model, optimized for dialogue and general tasks.",
		parameters=(_temperature(2), ParameterRange("top_p", "Top-P", 0, 1, 0.05, 1)),
	),
	ModelInfo(
		"openai/gpt-4o-mini",
		"GPT-4o Mini (via OpenRouter)",
		"OpenRouter",
		"GPT-4o Mini proxied through OpenRouter.",
		supports_vision=True,
		parameters=(_temperature(2),),
	),
	ModelInfo(
		"google/gemma-3-27b-it",
		"Gemma 3 27B (via OpenRouter)",
		"OpenRouter",
		"Gemma 3 27B instruction-tuned, proxied through OpenRouter.",
		supports_vision=True,
		parameters=(_temperature(2),),
	),
	ModelInfo(
		"local-echo",
		"Local deterministic responder",
		"Local",
		"Offline responder that needs no credentials. Replies are derived from the prompt.",
	),
)


def find_model(model_id: str) -> Optional[ModelInfo]:
	for model in MODEL_CATALOG:
		if model.id == model_id:
			return model
	return None


def models_for_provider(provider: str) -> List[ModelInfo]:
	return [model for model in MODEL_CATALOG if model.provider == provider]


def _provider_error(exc: Exception, provider: str) -> Exception:
	if is_quota_error(exc):
		return QuotaExceededError(f"{provider} quota exceeded: {exc}")
	name = exc.__class__.__name__
	if isinstance(exc, (TimeoutError, asyncio.TimeoutError)) or name == "APITimeoutError":
		return TransientProviderError(f"{provider} request timed out.", code="provider_timeout", status_code=504)
	return TransientProviderError(f"{provider} request failed: {exc}")


def _build_openai_client(*, api_key: str, base_url: Optional[str], timeout_s: float):
	try:
		from openai import AsyncOpenAI
	except ImportError as exc:
		raise ConfigurationError("OpenAI SDK not installed. Add 'openai' dependency.") from exc
	return AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout_s, max_retries=0)


def _build_genai_client(*, api_key: str):
	try:
		from google import genai
	except ImportError as exc:
		raise ConfigurationError("Google GenAI SDK not installed. Add 'google-genai' dependency.") from exc
	return genai.Client(api_key=api_key)


def _image_is_supported(attachment: Optional[Attachment]) -> bool:
	return (
		attachment is not None
		and attachment.is_image
		and attachment.mime_type in constants.SUPPORTED_IMAGE_MIME_TYPES
	)


class ProviderAdapter:
	"""Capability interface over one model provider."""

	provider: ProviderName = "Local"

	def __init__(self, *, timeout_s: float = constants.PROVIDER_TIMEOUT_SECONDS):
		self.timeout_s = timeout_s

	def supports_vision(self, model: str) -> bool:
		info = find_model(model)
		return bool(info and info.supports_vision)

	def supports_search(self, model: str) -> bool:
		info = find_model(model)
		return bool(info and info.supports_search)

	async def generate(self, request: ProviderRequest) -> ProviderReply:
		raise NotImplementedError


class OpenAIAdapter(ProviderAdapter):
	provider: ProviderName = "OpenAI"
	base_url: Optional[str] = None
	forwards_top_p = True

	def _user_content(self, request: ProviderRequest) -> List[Dict[str, Any]]:
		content: List[Dict[str, Any]] = [{"type": "text", "text": request.user_message}]
		if request.attachment is not None and self.supports_vision(request.model) and _image_is_supported(request.attachment):
			content.append(
				{
					"type": "image_url",
					"image_url": {"url": f"data:{request.attachment.mime_type};base64,{request.attachment.base64_data}"},
				}
			)
		return content

	def _sampling(self, parameters: ModelParameters) -> Dict[str, Any]:
		options: Dict[str, Any] = {}
		if parameters.temperature is not None:
			options["temperature"] = parameters.temperature
		if self.forwards_top_p and parameters.top_p is not None:
			options["top_p"] = parameters.top_p
		if parameters.max_length is not None:
			options["max_tokens"] = parameters.max_length
		return options

	async def generate(self, request: ProviderRequest) -> ProviderReply:
		client = _build_openai_client(api_key=request.api_key, base_url=self.base_url, timeout_s=self.timeout_s)
		try:
			response = await client.chat.completions.create(
				model=request.model,
				messages=[
					{"role": "system", "content": request.system_prompt},
					{"role": "user", "content": self._user_content(request)},
				],
				response_format={"type": "json_object"},
				**self._sampling(request.parameters),
			)
		except Exception as exc:
			raise _provider_error(exc, self.provider) from exc
		choices = getattr(response, "choices", None) or []
		text = choices[0].message.content if choices else None
		if not isinstance(text, str) or not text.strip():
			raise TransientProviderError(f"{self.provider} response was empty.")
		return ProviderReply(text=text)


class OpenRouterAdapter(OpenAIAdapter):
	provider: ProviderName = "OpenRouter"
	base_url = constants.OPENROUTER_BASE_URL
	forwards_top_p = False


class MistralAdapter(OpenAIAdapter):
	provider: ProviderName = "Mistral"
	base_url = constants.MISTRAL_BASE_URL
	forwards_top_p = False

	def _user_content(self, request: ProviderRequest) -> List[Dict[str, Any]]:
		return [{"type": "text", "text": request.user_message}]


class GoogleAdapter(ProviderAdapter):
	provider: ProviderName = "Google"

	def _config(self, request: ProviderRequest):
		from google.genai import types

		parameters = request.parameters
		options: Dict[str, Any] = {
			"system_instruction": request.system_prompt,
			"temperature": parameters.temperature,
			"top_p": parameters.top_p,
			"top_k": parameters.top_k,
		}
		if request.use_search:
			options["tools"] = [types.Tool(google_search=types.GoogleSearch())]
		else:
			options["response_mime_type"] = "application/json"
		if parameters.max_length is not None:
			options["max_output_tokens"] = parameters.max_length
		if parameters.thinking_budget is not None and "flash" in request.model:
			options["thinking_config"] = types.ThinkingConfig(thinking_budget=parameters.thinking_budget)
		return types.GenerateContentConfig(**options)

	def _contents(self, request: ProviderRequest) -> List[Any]:
		from google.genai import types

		parts: List[Any] = []
		attachment = request.attachment
		if attachment is not None and self.supports_vision(request.model) and _image_is_supported(attachment):
			parts.append(types.Part.from_bytes(data=base64.b64decode(attachment.base64_data or ""), mime_type=attachment.mime_type))
		parts.append(types.Part.from_text(text=request.user_message or "Please analyze the provided content."))
		return parts

	@staticmethod
	def _citations(response: Any) -> List[Citation]:
		candidates = getattr(response, "candidates", None) or []
		if not candidates:
			return []
		metadata = getattr(candidates[0], "grounding_metadata", None)
		chunks = getattr(metadata, "grounding_chunks", None) or []
		citations: List[Citation] = []
		for chunk in chunks:
			web = getattr(chunk, "web", None)
			uri = getattr(web, "uri", None)
			title = getattr(web, "title", None)
			if uri and title:
				citations.append(Citation(uri=uri, title=title))
		return citations

	async def generate(self, request: ProviderRequest) -> ProviderReply:
		client = _build_genai_client(api_key=request.api_key)
		try:
			response = await asyncio.wait_for(
				client.aio.models.generate_content(
					model=request.model,
					contents=self._contents(request),
					config=self._config(request),
				),
				timeout=self.timeout_s,
			)
		except Exception as exc:
			raise _provider_error(exc, self.provider) from exc
		text = getattr(response, "text", None)
		if not isinstance(text, str) or not text.strip():
			raise TransientProviderError("Google response was empty.")
		citations = self._citations(response) if request.use_search else []
		return ProviderReply(text=text, citations=citations)


_RESPOND_AS = re.compile(r'You MUST respond as (.+?)\. The "expert" field')
_EXPERT_FIELD = re.compile(r'"expert":\s*"([^"]+)"')
_BREAKDOWN_ASSIGNEE = re.compile(r'"assignedTo":\s*"([^"]+)"')


class LocalAdapter(ProviderAdapter):
	"""Deterministic offline provider.

	Replies are built from the prompt alone so sessions without credentials
	and tests behave the same on every run.
	"""

	provider: ProviderName = "Local"

	@staticmethod
	def _speaker(request: ProviderRequest) -> str:
		for source in (request.system_prompt, request.user_message):
			match = _RESPOND_AS.search(source)
			if match:
				return match.group(1)
		match = _EXPERT_FIELD.search(request.user_message)
		if match and not match.group(1).startswith("{"):
			return match.group(1)
		return constants.ROLE_SCRUM_LEADER

	async def generate(self, request: ProviderRequest) -> ProviderReply:
		speaker = self._speaker(request)
		instruction = " ".join(request.user_message.split())
		excerpt = instruction[:160]
		payload: Dict[str, Any] = {
			"expert": speaker,
			"emoji": "",
			"message": f"{speaker} considered: {excerpt}",
			"thoughts": [f"What would {speaker} need to clarify about '{excerpt[:60]}'?"],
			"work": None,
			"memoryEntry": None,
			"tasks": [],
			"stories": [],
		}
		if "Documentation Task Breakdown Request" in request.user_message:
			assignee = _BREAKDOWN_ASSIGNEE.search(request.user_message)
			payload["thoughts"] = []
			payload["tasks"] = [
				{
					"description": f"Document the story from the {speaker} perspective.",
					"assignedTo": assignee.group(1) if assignee else speaker,
				}
			]
			payload["message"] = f"{speaker} identified 1 documentation task."
		elif "Backlog Generation Request" in request.user_message:
			payload["thoughts"] = []
			payload["tasks"] = [{"description": "Review the discussion outcomes with the team.", "assignedTo": None}]
			payload["message"] = "I've reviewed the discussion and generated a backlog of 1 task."
		elif "Narrative Summary Request" in request.user_message:
			payload["thoughts"] = []
			payload["message"] = f"The team has exchanged {request.system_prompt.count('): ')} recent contributions."
		elif "marked 'Addressed'" in request.user_message:
			payload["thoughts"] = []
			payload["stories"] = [
				{
					"userStory": f"As a user, I want the team to resolve: {excerpt[:80]}",
					"benefit": "The discussion point becomes actionable work.",
					"acceptanceCriteria": ["The point is documented", "The team agrees on the outcome"],
					"priority": "Medium",
				}
			]
			payload["message"] = "Generated 1 user story from the addressed question."
		return ProviderReply(text=json.dumps(payload, ensure_ascii=False))


def default_adapters(timeout_s: float = constants.PROVIDER_TIMEOUT_SECONDS) -> Dict[str, ProviderAdapter]:
	adapters: List[ProviderAdapter] = [
		OpenAIAdapter(timeout_s=timeout_s),
		OpenRouterAdapter(timeout_s=timeout_s),
		MistralAdapter(timeout_s=timeout_s),
		GoogleAdapter(timeout_s=timeout_s),
		LocalAdapter(timeout_s=timeout_s),
	]
	return {adapter.provider: adapter for adapter in adapters}


class ResponseRouter:
	"""Routes one prompt to the configured provider and returns a validated reply."""

	def __init__(
		self,
		*,
		settings: Optional[EngineSettings] = None,
		adapters: Optional[Mapping[str, ProviderAdapter]] = None,
		sleep: Sleep = asyncio.sleep,
		rng: Callable[[], float] = random.random,
	):
		self.settings = settings or EngineSettings()
		self.adapters: Dict[str, ProviderAdapter] = dict(adapters) if adapters is not None else default_adapters(self.settings.provider_timeout_s)
		self._sleep = sleep
		self._rng = rng

	def _credential(self, config: SessionConfig, provider: str) -> str:
		if provider == "Local":
			return ""
		key = (config.api_keys.get(provider) or "").strip() or provider_key_from_env(provider)
		if not key:
			env_name = constants.PROVIDER_KEY_ENV.get(provider, "")
			raise ConfigurationError(f"API key for the selected provider ({provider}) is missing. Set {env_name}.")
		return key

	async def respond(
		self,
		config: SessionConfig,
		system_prompt: str,
		user_message: str,
		*,
		allowed: Mapping[str, Persona],
		system: Persona,
		attachment: Optional[Attachment] = None,
		search_requested: bool = False,
	) -> ParsedResponse:
		model = find_model(config.model)
		if model is None:
			raise ConfigurationError(f"Model with ID '{config.model}' not found in supported models list.", code="invalid_model")
		adapter = self.adapters.get(model.provider)
		if adapter is None:
			raise ConfigurationError(f"Unsupported provider: {model.provider}")
		api_key = self._credential(config, model.provider)

		if attachment is not None and attachment.is_image and not adapter.supports_vision(model.id):
			logger.warning("model %s has no vision support; ignoring image %s", model.id, attachment.name)
			attachment = None

		request = ProviderRequest(
			model=model.id,
			system_prompt=system_prompt,
			user_message=user_message,
			parameters=config.parameters,
			api_key=api_key,
			attachment=attachment,
			use_search=search_requested and adapter.supports_search(model.id),
		)

		async def _attempt() -> Tuple[ProviderReply, Dict[str, Any]]:
			reply = await adapter.generate(request)
			return reply, extract_payload(reply.text)

		reply, payload = await with_retry(
			_attempt,
			max_retries=self.settings.max_retries,
			base_delay=self.settings.retry_base_delay_s,
			jitter=self.settings.retry_jitter_s,
			sleep=self._sleep,
			rng=self._rng,
		)
		return recover(payload, allowed=allowed, system=system, citations=reply.citations)
