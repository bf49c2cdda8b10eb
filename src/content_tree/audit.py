from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Protocol

from content_tree.models import utc_now


Operation = Literal[
    "create",
    "update",
    "move",
    "reorder",
    "delete",
    "create_type",
    "update_type",
    "delete_type",
]


@dataclass(frozen=True)
class AuditEvent:
    actor_id: str
    operation: Operation
    entity_type: str
    entity_id: int | None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    occurred_at: datetime = field(default_factory=utc_now)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes one log line per event; persistence is left to log shipping."""

    def __init__(self, logger_name: str = "content_tree.audit") -> None:
        self._logger: logging.Logger = logging.getLogger(logger_name)

    def record(self, event: AuditEvent) -> None:
        self._logger.info(
            "audit actor=%s op=%s entity=%s:%s before=%s after=%s",
            event.actor_id,
            event.operation,
            event.entity_type,
            event.entity_id,
            json.dumps(event.before, default=str, sort_keys=True),
            json.dumps(event.after, default=str, sort_keys=True),
        )
