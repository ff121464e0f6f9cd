from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from adminauth.logging import get_logger
from adminauth.storage.models import utcnow

logger = get_logger(__name__)


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class AuditEvent:
    principal_id: Optional[str]
    action: str
    severity: Severity = Severity.LOW
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["severity"] = Severity(self.severity).value
        data["timestamp"] = self.timestamp.isoformat()
        return data


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the structured log under the ``audit`` logger."""

    def __init__(self) -> None:
        self.logger = get_logger("audit")

    def record(self, event: AuditEvent) -> None:
        payload = event.to_dict()
        action = payload.pop("action")
        self.logger.info("audit_event", action=action, **payload)


class MemoryAuditSink:
    """Keeps events in a list; used by tests and local tooling."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [e.action for e in self.events]


def emit(sink: AuditSink | None, event: AuditEvent) -> None:
    """Record ``event`` without letting a sink failure abort the caller."""
    if sink is None:
        return
    try:
        sink.record(event)
    except Exception as exc:
        logger.error(
            "audit_record_failed",
            action=event.action,
            principal_id=event.principal_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
