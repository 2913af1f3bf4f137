from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.trustedhost import TrustedHostMiddleware

from agile_bloom.backend import constants
from agile_bloom.backend.engine.errors import EngineError
from agile_bloom.backend.middleware import SESSION_HEADER, RequestContextMiddleware
from agile_bloom.backend.response import error_response
from agile_bloom.backend.routers import discussion, models, personas


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
	app = FastAPI(
		title=constants.APP_NAME,
		version=constants.APP_VERSION,
	)
	_register_middleware(app)
	_register_handlers(app)
	_register_routers(app)
	return app


def _register_middleware(app: FastAPI) -> None:
	app.add_middleware(RequestContextMiddleware)
	app.add_middleware(GZipMiddleware, minimum_size=1024)
	app.add_middleware(
		CORSMiddleware,
		allow_origins=constants.DEFAULT_CORS_ALLOW_ORIGINS,
		allow_credentials=True,
		allow_methods=["*"],
		allow_headers=["*"],
		expose_headers=[SESSION_HEADER],
	)
	app.add_middleware(
		TrustedHostMiddleware,
		allowed_hosts=constants.DEFAULT_TRUSTED_HOSTS,
	)


def _register_routers(app: FastAPI) -> None:
	app.include_router(discussion.router)
	app.include_router(personas.router)
	app.include_router(models.router)


def _envelope(request: Request, status_code: int, code: str, message: str, evidence: Optional[List[str]] = None) -> JSONResponse:
	payload = error_response(code=code, message=message, request=request, evidence=evidence)
	return JSONResponse(status_code=status_code, content=payload)


def _detail_fields(status_code: int, detail: Any) -> Tuple[str, str, Optional[List[str]]]:
	if not isinstance(detail, dict):
		return f"http_{status_code}", _exc_message(detail), None
	code = detail.get("code")
	message = detail.get("message")
	evidence = detail.get("evidence")
	return (
		code.strip() if isinstance(code, str) and code.strip() else f"http_{status_code}",
		message.strip() if isinstance(message, str) and message.strip() else _exc_message(detail),
		[str(item) for item in evidence] if isinstance(evidence, list) else None,
	)


def _register_handlers(app: FastAPI) -> None:
	@app.exception_handler(HTTPException)
	async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
		code, message, evidence = _detail_fields(exc.status_code, exc.detail)
		return _envelope(request, exc.status_code, code, message, evidence)

	@app.exception_handler(EngineError)
	async def handle_engine_error(request: Request, exc: EngineError) -> JSONResponse:
		return _envelope(request, exc.status_code, exc.code, exc.message)

	@app.exception_handler(StarletteHTTPException)
	async def handle_starlette_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
		return _envelope(request, exc.status_code, f"http_{exc.status_code}", _exc_message(exc.detail))

	@app.exception_handler(RequestValidationError)
	async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
		evidence = []
		for issue in exc.errors():
			loc = ".".join(str(part) for part in issue.get("loc", []))
			msg = issue.get("msg", "Invalid request.")
			evidence.append(f"{loc}: {msg}" if loc else msg)
		return _envelope(request, 422, "validation_error", "Request validation failed.", evidence)

	@app.exception_handler(Exception)
	async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
		logger.exception("unhandled error on %s %s", request.method, request.url.path)
		return _envelope(request, 500, "internal_error", "Internal server error.")


def _exc_message(detail: Any) -> str:
	if isinstance(detail, str):
		return detail
	if detail is None:
		return "Request failed."
	return str(detail)


app = create_app()
