"""Structured JSON logging.

Each record is one JSON object per line. Identifiers of orchestration objects
(workspace, trigger, process instance, task, SLA instance ...) are promoted to top-level
keys so log lines can be filtered by them directly; any other ``extra=`` fields land under
``"extra"``. Fields bound with :func:`log_context` are added to every record emitted in
that context, e.g. a scheduler tick binds ``workspace_id`` once for everything it logs.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

CONTEXT_FIELDS: tuple[str, ...] = (
    "workspace_id",
    "trigger_id",
    "event_id",
    "definition_id",
    "process_instance_id",
    "process_instance_key",
    "task_id",
    "instance_id",
    "table_id",
    "actor_id",
    "scheduler",
)

_RESERVED_LOG_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys() | {"message", "asctime"}
)

_bound: ContextVar[dict[str, Any]] = ContextVar("process_orchestrator_log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind ``fields`` to every record logged inside the block (nesting merges)."""

    token = _bound.set({**_bound.get(), **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _bound.reset(token)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        fields = dict(_bound.get())
        fields.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS and not key.startswith("_")
        )
        for key in CONTEXT_FIELDS:
            if fields.get(key) is not None:
                payload[key] = fields.pop(key)
        if fields:
            payload["extra"] = fields

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())

    # Runtime HTTP calls log through urllib3 at DEBUG.
    logging.getLogger("urllib3").setLevel(max(root.level, logging.WARNING))
