"""JSON log output with per-task context and location-safe field handling.

Feed logs routinely carry coordinates and post text. Text fields are redacted
outright; coordinates are coarsened to two decimals (about 1km) so a log line
still tells which area a feed served without pinpointing the user.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict

from nearfeed.settings import settings

_LOGGER_NAME = "nearfeed"

_CONTEXT_FIELDS: Dict[str, ContextVar] = {
	"search_context": ContextVar("nearfeed_search_context", default=None),
	"user_id": ContextVar("nearfeed_user_id", default=None),
	"operation": ContextVar("nearfeed_operation", default=None),
}

_REDACTED_FRAGMENTS = ("token", "secret", "password", "email", "content", "body", "payload")
_COORDINATE_KEYS = frozenset({"lat", "lon", "lng", "latitude", "longitude"})
_COORDINATE_DECIMALS = 2

_MAX_TEXT = 256
_MAX_ITEMS = 10

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {
	"message",
	"asctime",
}


def bind_context(**fields: str | None) -> Dict[str, Token]:
	"""Bind ``search_context``, ``user_id`` or ``operation`` for the running task."""
	tokens: Dict[str, Token] = {}
	for name, value in fields.items():
		var = _CONTEXT_FIELDS.get(name)
		if var is None:
			raise KeyError(f"unknown log context field: {name}")
		if value is not None:
			tokens[name] = var.set(value)
	return tokens


def reset_context(tokens: Dict[str, Token]) -> None:
	for name, token in tokens.items():
		_CONTEXT_FIELDS[name].reset(token)


def _clip(value: Any) -> Any:
	if isinstance(value, str):
		return value if len(value) <= _MAX_TEXT else value[:_MAX_TEXT] + "…"
	if isinstance(value, dict):
		items = list(value.items())
		clipped = {str(key): sanitize_field(str(key), nested) for key, nested in items[:_MAX_ITEMS]}
		if len(items) > _MAX_ITEMS:
			clipped["…"] = f"+{len(items) - _MAX_ITEMS} keys"
		return clipped
	if isinstance(value, (list, tuple, set)):
		items = [_clip(item) for item in value]
		return items if len(items) <= _MAX_ITEMS else items[:_MAX_ITEMS] + ["…"]
	return value


def sanitize_field(key: str, value: Any) -> Any:
	lowered = key.lower()
	if lowered in _COORDINATE_KEYS:
		try:
			return round(float(value), _COORDINATE_DECIMALS)
		except (TypeError, ValueError):
			return "[redacted]"
	if any(fragment in lowered for fragment in _REDACTED_FRAGMENTS):
		return "[redacted]"
	return _clip(value)


class JSONLogFormatter(logging.Formatter):
	"""One JSON object per line: base fields, bound context, then sanitized extras."""

	def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (logging api)
		payload: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"logger": record.name,
			"msg": record.getMessage(),
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		for name, var in _CONTEXT_FIELDS.items():
			bound = var.get()
			if bound:
				payload[name] = bound
		for key, value in record.__dict__.items():
			if key not in _RECORD_ATTRS:
				payload[key] = sanitize_field(key, value)
		if record.exc_info:
			payload["exc_info"] = self.formatException(record.exc_info)
		return json.dumps(payload, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Drop a share of INFO records; other levels always pass."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = settings.obs_log_sampling_rate_info
		return rate >= 1.0 or random.random() < max(rate, 0.0)


def configure_logging() -> logging.Logger:
	"""Install the JSON handler on the root logger, replacing one installed earlier."""
	root = logging.getLogger()
	for existing in list(root.handlers):
		if isinstance(existing.formatter, JSONLogFormatter):
			root.removeHandler(existing)
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root.addHandler(handler)
	root.setLevel(settings.obs_log_level)
	return logging.getLogger(_LOGGER_NAME)


__all__ = [
	"InfoSamplingFilter",
	"JSONLogFormatter",
	"bind_context",
	"configure_logging",
	"reset_context",
	"sanitize_field",
]
