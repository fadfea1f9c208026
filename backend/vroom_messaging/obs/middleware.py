"""Request instrumentation: Prometheus timings plus one ``http_request`` log line."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from vroom_messaging.obs import logging as obs_logging
from vroom_messaging.obs import metrics
from vroom_messaging.settings import settings

_logger = obs_logging.get_logger("vroom.http")


def _route_template(request: Request) -> str:
	# Templated paths keep metric label cardinality bounded.
	route = request.scope.get("route")
	return getattr(route, "path", None) or request.url.path


def _request_id(request: Request) -> str:
	rid = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id") or str(uuid4())
	request.state.request_id = rid
	return rid


class ObservabilityMiddleware(BaseHTTPMiddleware):
	async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
		if not settings.obs_enabled:
			return await call_next(request)

		request_id = _request_id(request)
		tokens = obs_logging.bind_context(
			request_id=request_id,
			route=request.url.path,
			user_id=request.headers.get("X-User-Id"),
			client_ip=request.client.host if request.client else None,
		)
		started = time.perf_counter()
		status_code = 500
		try:
			response = await call_next(request)
			status_code = response.status_code
		except Exception:
			_logger.exception("http_request_error", extra={"method": request.method})
			raise
		finally:
			elapsed = time.perf_counter() - started
			metrics.observe_request(_route_template(request), request.method, status_code, elapsed)
			_logger.info(
				"http_request",
				extra={"status": status_code, "method": request.method, "latency_ms": round(elapsed * 1000, 3)},
			)
			obs_logging.reset_context(tokens)

		response.headers.setdefault("X-Request-Id", request_id)
		return response


def install(app) -> None:
	app.add_middleware(ObservabilityMiddleware)
