"""Audit trail for AI tool calls and assistant turns.

Every dispatch produces one :class:`AuditEntry`, whether it was rejected
by validation, denied, or executed.  Parameters are sanitized before they
leave the process.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Protocol

from src.models import utcnow

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = ("password", "token", "secret")
REDACTED = "[REDACTED]"


def sanitize_params(params: dict[str, Any]) -> dict[str, Any]:
    """Return a shallow copy of *params* with sensitive values redacted."""
    sanitized = dict(params)
    for name in SENSITIVE_FIELDS:
        if name in sanitized:
            sanitized[name] = REDACTED
    return sanitized


@dataclass(frozen=True)
class AuditEntry:
    action: str
    user_id: str
    tenant_id: str
    entity_id: str
    details: dict[str, Any]
    role: str | None = None
    at: datetime = field(default_factory=utcnow)


class AuditSink(Protocol):
    def record(self, entry: AuditEntry) -> None: ...


class LoggingAuditSink:
    """Writes one structured log line per entry to the ``audit`` logger."""

    def __init__(self, logger_name: str = "src.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    def record(self, entry: AuditEntry) -> None:
        payload = asdict(entry)
        payload["at"] = entry.at.isoformat()
        self._logger.info(json.dumps(payload, default=str, sort_keys=True))


class InMemoryAuditSink:
    """Keeps entries in a list; handy for the CLI and for tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[AuditEntry] = []

    def record(self, entry: AuditEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    @property
    def entries(self) -> list[AuditEntry]:
        with self._lock:
            return list(self._entries)


def tool_call_entry(
    *,
    user_id: str,
    tenant_id: str,
    role: str | None,
    tool: str,
    params: dict[str, Any],
    success: bool,
    error: str | None,
) -> AuditEntry:
    return AuditEntry(
        action="AI_TOOL_CALL",
        user_id=user_id,
        tenant_id=tenant_id,
        role=role,
        entity_id=tool,
        details={
            "tool": tool,
            "params": sanitize_params(params),
            "success": success,
            "error": error,
        },
    )
