"""Structured JSON logging with per-request and per-socket-event context."""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from vroom_messaging.settings import settings

_LOGGER_NAME = "vroom"

# name -> (context var, key in the emitted JSON)
_CONTEXT: Dict[str, tuple[ContextVar[Optional[str]], str]] = {
	"request_id": (ContextVar("obs_request_id", default=None), "request_id"),
	"route": (ContextVar("obs_route", default=None), "route"),
	"user_id": (ContextVar("obs_user_id", default=None), "user_id"),
	"client_ip": (ContextVar("obs_client_ip", default=None), "ip"),
	"sid": (ContextVar("obs_socket_sid", default=None), "sid"),
}

# Message bodies and credentials never reach the log stream.
_REDACTED_KEYS = ("content", "body", "payload", "token", "secret", "authorization", "password", "email")

_MAX_STRING = 256
_MAX_ITEMS = 10

_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "taskName"}


def bind_context(**fields: Optional[str]) -> Dict[str, Token]:
	"""Bind known context fields (``request_id``, ``route``, ``user_id``, ``client_ip``, ``sid``)."""
	tokens: Dict[str, Token] = {}
	for name, value in fields.items():
		if value is None or name not in _CONTEXT:
			continue
		tokens[name] = _CONTEXT[name][0].set(value)
	return tokens


def reset_context(tokens: Dict[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT[name][0].reset(token)


def current_request_id() -> Optional[str]:
	return _CONTEXT["request_id"][0].get()


def _clip(value: Any) -> Any:
	if isinstance(value, str) and len(value) > _MAX_STRING:
		return value[:_MAX_STRING] + "…"
	if isinstance(value, dict):
		items = list(value.items())
		clipped = {str(k): _scrub(str(k), v) for k, v in items[:_MAX_ITEMS]}
		if len(items) > _MAX_ITEMS:
			clipped["…"] = f"+{len(items) - _MAX_ITEMS} keys"
		return clipped
	if isinstance(value, (list, tuple, set)):
		values = [_clip(item) for item in value]
		return values[:_MAX_ITEMS] + (["…"] if len(values) > _MAX_ITEMS else [])
	return value


def _scrub(key: str, value: Any) -> Any:
	lowered = key.lower()
	if any(marker in lowered for marker in _REDACTED_KEYS):
		return "[redacted]"
	return _clip(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: base fields, bound context, then ``extra``."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (match logging api)
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		for var, out_key in _CONTEXT.values():
			value = var.get()
			if value:
				payload[out_key] = value
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in vars(record).items():
			if key in _RECORD_ATTRS or key in payload:
				continue
			payload[key] = _scrub(key, value)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Keep a sample of INFO records; everything else passes."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = max(0.0, min(1.0, settings.obs_log_sampling_rate_info))
		return rate >= 1.0 or random.random() < rate


def configure_logging() -> logging.Logger:
	"""Install the JSON handler on the root logger."""
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root = logging.getLogger()
	root.handlers = [handler]
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
