from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


logger = logging.getLogger(__name__)

SESSION_HEADER = "X-Session-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
	"""Tags each request with a request id and a discussion session id.

	A caller without a session header gets a fresh one back and must send it
	on later calls to reach the same discussion.
	"""

	async def dispatch(self, request: Request, call_next) -> Response:
		request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
		session_id = request.headers.get(SESSION_HEADER, "").strip() or uuid.uuid4().hex
		request.state.request_id = request_id
		request.state.session_id = session_id
		start = time.perf_counter()
		response = await call_next(request)
		elapsed = time.perf_counter() - start
		response.headers["X-Request-ID"] = request_id
		response.headers[SESSION_HEADER] = session_id
		response.headers["X-Process-Time"] = f"{elapsed:.6f}"
		logger.debug("%s %s -> %d in %.3fs", request.method, request.url.path, response.status_code, elapsed)
		return response
