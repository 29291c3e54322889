"""Structured logging for the key service.

Log lines are JSON objects (or plain text for local runs) carrying the
event name as ``message`` and the ``extra`` fields passed by the caller.

Two kinds of fields never reach the output verbatim:
- secrets (API keys, issued keys, auth headers) are replaced by
  ``[REDACTED]``;
- binding identifiers (owner ids, HWIDs) are replaced by a short sha256
  digest, so events for one owner or machine can still be correlated.

The current request id lives in a contextvar set by the HTTP middleware and
is attached to every record emitted while the request is handled.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Mapping

from keygate.core.config import LogSettings, settings

REDACTED = "[REDACTED]"

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

SENSITIVE_KEYS_DEFAULT: frozenset[str] = frozenset(
    {
        "api_key",
        "x-api-key",
        "authorization",
        "cookie",
        "set-cookie",
        "secret",
        "password",
        "token",
        "key",
        "app_api_keys",
        "app_admin_api_keys",
    }
)

IDENTIFIER_KEYS_DEFAULT: frozenset[str] = frozenset(
    {
        "owner_id",
        "user_id",
        "hwid",
        "new_hwid",
    }
)

# LogRecord attributes that are not caller-supplied extras
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}


def set_request_id(request_id: str | None) -> None:
    _request_id_var.set(request_id)


def get_request_id() -> str | None:
    return _request_id_var.get()


def clear_request_id() -> None:
    _request_id_var.set(None)


def hash_for_log(value: str) -> str:
    """Return a short, stable digest of an identifier for log correlation."""

    return hashlib.sha256(value.encode()).hexdigest()[:16]


class _Scrubber:
    """Replaces secrets and hashes identifiers inside arbitrary extras."""

    def __init__(
        self,
        sensitive_keys: Iterable[str] | None = None,
        identifier_keys: Iterable[str] | None = None,
    ) -> None:
        self.sensitive_keys = {k.lower() for k in (sensitive_keys or SENSITIVE_KEYS_DEFAULT)}
        self.identifier_keys = {
            k.lower() for k in (identifier_keys or IDENTIFIER_KEYS_DEFAULT)
        } - self.sensitive_keys

    def field(self, name: str, value: Any) -> Any:
        lowered = name.lower()
        if lowered in self.sensitive_keys:
            return REDACTED
        if lowered in self.identifier_keys and isinstance(value, str):
            return hash_for_log(value)
        return self.value(value)

    def value(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {k: self.field(str(k), v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self.value(v) for v in value)
        return value

    def extras(self, record: LogRecord) -> dict[str, Any]:
        return {
            name: self.field(name, value)
            for name, value in record.__dict__.items()
            if name not in _RECORD_ATTRS and not name.startswith("_")
        }


class RequestIdFilter(logging.Filter):
    """Attach the contextvar request id to records that lack one."""

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if getattr(record, "request_id", None) is None:
            request_id = get_request_id()
            if request_id:
                record.request_id = request_id
        return True


class SensitiveDataFilter(logging.Filter):
    """Scrub extras in place so every formatter sees safe values."""

    def __init__(
        self,
        sensitive_keys: Iterable[str] | None = None,
        identifier_keys: Iterable[str] | None = None,
    ) -> None:
        super().__init__()
        self._scrubber = _Scrubber(sensitive_keys, identifier_keys)

    def filter(self, record: LogRecord) -> bool:  # noqa: D401
        if not getattr(record, "_scrubbed", False):
            for name, value in self._scrubber.extras(record).items():
                setattr(record, name, value)
            record._scrubbed = True
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record: timestamp, level, logger, event, extras."""

    def __init__(
        self,
        *,
        sensitive_keys: Iterable[str] | None = None,
        identifier_keys: Iterable[str] | None = None,
        ensure_ascii: bool = True,
    ) -> None:
        super().__init__()
        self._scrubber = _Scrubber(sensitive_keys, identifier_keys)
        self.ensure_ascii = ensure_ascii

    def format(self, record: LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id
        if getattr(record, "_scrubbed", False):
            payload.update(
                (name, value)
                for name, value in record.__dict__.items()
                if name not in _RECORD_ATTRS and not name.startswith("_")
            )
        else:
            payload.update(self._scrubber.extras(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=self.ensure_ascii)


def _build_handler(log_settings: LogSettings) -> logging.Handler:
    if log_settings.output.lower() != "file":
        return logging.StreamHandler(sys.stdout)

    file_path = Path(log_settings.file_path or "logs/keygate.log")
    file_path.parent.mkdir(parents=True, exist_ok=True)
    if log_settings.max_bytes:
        return RotatingFileHandler(
            file_path,
            maxBytes=log_settings.max_bytes,
            backupCount=log_settings.backup_count,
            encoding="utf-8",
        )
    return logging.FileHandler(file_path, encoding="utf-8")


def configure_logging(log_settings: LogSettings | None = None) -> None:
    """Install the root handler (stdout or rotating file) with scrubbing.

    Args:
        log_settings: Log settings; defaults to ``settings.log``.
    """

    cfg = log_settings or settings.log

    handler = _build_handler(cfg)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())

    if cfg.format.lower() == "plain":
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

    # Access events come from keygate.access; silence uvicorn's duplicate
    logging.getLogger("uvicorn.access").disabled = True
