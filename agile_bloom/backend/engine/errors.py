from __future__ import annotations

from typing import Optional


class EngineError(Exception):
	def __init__(self, *, code: str, message: str, status_code: int = 400):
		super().__init__(message)
		self.status_code = status_code
		self.code = code
		self.message = message


class ConfigurationError(EngineError):
	def __init__(self, message: str, *, code: str = "provider_unconfigured"):
		super().__init__(code=code, message=message, status_code=503)


class TransientProviderError(EngineError):
	def __init__(self, message: str, *, code: str = "provider_error", status_code: int = 502):
		super().__init__(code=code, message=message, status_code=status_code)


class StructuralValidationError(EngineError):
	def __init__(self, message: str):
		super().__init__(code="provider_schema_error", message=message, status_code=502)


class QuotaExceededError(EngineError):
	def __init__(self, message: str):
		super().__init__(code="provider_quota_exceeded", message=message, status_code=429)


class ProviderExhaustedError(EngineError):
	def __init__(self, message: str, *, attempts: int):
		super().__init__(
			code="provider_retries_exhausted",
			message=f"Provider failed after {attempts} attempt(s): {message}",
			status_code=502,
		)
		self.attempts = attempts
		self.last_message = message


class ImportValidationError(EngineError):
	def __init__(self, *, index: Optional[int], field: str, message: str):
		prefix = f"Record {index}" if index is not None else "Payload"
		super().__init__(
			code="import_invalid",
			message=f"{prefix}: field '{field}' {message}",
			status_code=422,
		)
		self.index = index
		self.field = field


class EntityNotFoundError(EngineError):
	def __init__(self, message: str):
		super().__init__(code="not_found", message=message, status_code=404)


class InvalidTransitionError(EngineError):
	def __init__(self, message: str):
		super().__init__(code="invalid_transition", message=message, status_code=409)


class EngineBusyError(EngineError):
	def __init__(self, message: str = "A response is already being generated."):
		super().__init__(code="engine_busy", message=message, status_code=409)
