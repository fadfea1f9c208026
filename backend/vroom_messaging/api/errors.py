"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from vroom_messaging.api.request_id import get_request_id
from vroom_messaging.domain.messaging.exceptions import MessagingError, ValidationError

logger = logging.getLogger(__name__)


def _error_body(message: str, code: str, request: Request) -> dict:
    return {"message": message, "detail": code, "request_id": get_request_id(request)}


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MessagingError)
    async def messaging_exc_handler(request: Request, exc: MessagingError):  # type: ignore[override]
        if exc.status_code >= 500:
            logger.error("messaging_request_failed", extra={"reason": exc.reason})
        payload = _error_body(exc.message, exc.reason, request)
        return JSONResponse(status_code=exc.status_code, content=payload)

    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        detail = exc.detail if isinstance(exc.detail, str) else "http_error"
        payload = _error_body(detail, detail, request)
        return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        payload = _error_body(ValidationError.default_message, ValidationError.reason, request)
        payload["errors"] = [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]
        return JSONResponse(status_code=400, content=payload)
