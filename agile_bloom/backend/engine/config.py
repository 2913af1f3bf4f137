from __future__ import annotations

import os
from dataclasses import dataclass

from agile_bloom.backend import constants


def _int_env(name: str, default: int, minimum: int = 1) -> int:
	raw = os.getenv(name, "").strip()
	if not raw:
		return default
	try:
		value = int(raw)
	except ValueError:
		return default
	return value if value >= minimum else default


def _float_env(name: str, default: float, minimum: float = 0.0) -> float:
	raw = os.getenv(name, "").strip()
	if not raw:
		return default
	try:
		value = float(raw)
	except ValueError:
		return default
	return value if value >= minimum else default


@dataclass(frozen=True)
class EngineSettings:
	rate_limit_max: int = constants.RATE_LIMIT_MAX_MESSAGES_PER_WINDOW
	rate_limit_window_s: float = constants.RATE_LIMIT_WINDOW_SECONDS
	call_delay_s: float = constants.SEQUENTIAL_CALL_DELAY_SECONDS
	bulk_delay_s: float = constants.BULK_ACTION_DELAY_SECONDS
	max_retries: int = constants.MAX_RETRIES
	retry_base_delay_s: float = constants.RETRY_BASE_DELAY_SECONDS
	retry_jitter_s: float = constants.RETRY_JITTER_SECONDS
	provider_timeout_s: float = constants.PROVIDER_TIMEOUT_SECONDS
	memory_capacity: int = constants.MAX_MEMORY_ENTRIES
	history_turns: int = constants.DEFAULT_HISTORY_TURNS
	question_min_length: int = constants.QUESTION_MIN_LENGTH
	question_requires_mark: bool = False

	def is_material_question(self, thought: str) -> bool:
		"""Decide whether a thought fragment is worth tracking as a question."""
		text = thought.strip()
		if not text:
			return False
		if "?" in text:
			return True
		if self.question_requires_mark:
			return False
		return len(text) > self.question_min_length


def load_settings() -> EngineSettings:
	return EngineSettings(
		rate_limit_max=_int_env("AGILE_BLOOM_RATE_LIMIT_MAX", constants.RATE_LIMIT_MAX_MESSAGES_PER_WINDOW),
		rate_limit_window_s=_float_env(
			"AGILE_BLOOM_RATE_LIMIT_WINDOW_S", constants.RATE_LIMIT_WINDOW_SECONDS, minimum=0.1
		),
		call_delay_s=_float_env("AGILE_BLOOM_CALL_DELAY_S", constants.SEQUENTIAL_CALL_DELAY_SECONDS),
		max_retries=_int_env("AGILE_BLOOM_MAX_RETRIES", constants.MAX_RETRIES, minimum=0),
		retry_base_delay_s=_float_env("AGILE_BLOOM_RETRY_BASE_DELAY_S", constants.RETRY_BASE_DELAY_SECONDS),
		provider_timeout_s=_float_env(
			"AGILE_BLOOM_PROVIDER_TIMEOUT_S", constants.PROVIDER_TIMEOUT_SECONDS, minimum=1.0
		),
		memory_capacity=_int_env("AGILE_BLOOM_MEMORY_CAPACITY", constants.MAX_MEMORY_ENTRIES),
		history_turns=_int_env("AGILE_BLOOM_HISTORY_TURNS", constants.DEFAULT_HISTORY_TURNS),
	)


def session_ttl_seconds() -> int:
	return _int_env("AGILE_BLOOM_SESSION_TTL_S", constants.SESSION_TTL_SECONDS, minimum=60)


def persona_db_path() -> str:
	return os.getenv("AGILE_BLOOM_PERSONA_DB", "").strip() or constants.DEFAULT_PERSONA_DB_PATH


def provider_key_from_env(provider: str) -> str:
	env_name = constants.PROVIDER_KEY_ENV.get(provider)
	if not env_name:
		return ""
	return os.getenv(env_name, "").strip()
