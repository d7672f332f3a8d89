"""JSON logging with request and moderation-task context."""

from __future__ import annotations

import json
import logging
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pixguard.settings import settings

_LOGGER_NAME = "pixguard"

# Context variable -> key in the emitted JSON
_CONTEXT: Dict[str, ContextVar[Optional[str]]] = {
	"request_id": ContextVar("pixguard_request_id", default=None),
	"ip": ContextVar("pixguard_client_ip", default=None),
	"task_id": ContextVar("pixguard_task_id", default=None),
}

# Provider credentials and the admin token must never reach the log stream
_REDACTED_FIELDS = frozenset({"api_key", "admin_token", "authorization", "lease_token"})

_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "taskName"}


def bind_context(
	*,
	request_id: Optional[str] = None,
	client_ip: Optional[str] = None,
	task_id: Optional[str] = None,
) -> Dict[str, Token]:
	"""Bind fields onto every log line emitted from the current context."""
	values = {"request_id": request_id, "ip": client_ip, "task_id": task_id}
	return {name: _CONTEXT[name].set(value) for name, value in values.items() if value is not None}


def reset_context(tokens: Dict[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT[name].reset(token)


def current_request_id(default: str = "unknown") -> str:
	return _CONTEXT["request_id"].get() or default


def _field_value(key: str, value: Any) -> Any:
	if key in _REDACTED_FIELDS:
		return "[redacted]"
	if isinstance(value, (str, int, float, bool)) or value is None:
		return value
	return str(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per record: service metadata, bound context, then ``extra=`` fields."""

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
		for name, var in _CONTEXT.items():
			value = var.get()
			if value:
				payload[name] = value
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		for key, value in record.__dict__.items():
			if key in _STANDARD_ATTRS or key.startswith("_"):
				continue
			payload[key] = _field_value(key, value)
		return json.dumps(payload, separators=(",", ":"))


def configure_logging() -> logging.Logger:
	root = logging.getLogger()
	root.handlers.clear()
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	return logging.getLogger(name or _LOGGER_NAME)
