"""Audit event shape and the sinks that receive it."""
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from accubooks.audit.models import AuditLog
from accubooks.base import generate_id


class AuditEvent(BaseModel):
    """Structured audit event."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: generate_id("audit"))
    tenant_id: str
    event_type: str
    entity_type: str
    entity_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    source: str = "system"
    request_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    explanation: Optional[str] = None
    created_at: datetime


class AuditSink(Protocol):
    async def emit(self, event: AuditEvent) -> None:
        ...


class InMemoryAuditSink:
    """Keeps events in a list. Used by tests and local runs."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def for_entity(self, entity_id: str) -> List[AuditEvent]:
        return [e for e in self.events if e.entity_id == entity_id]


class SqlAlchemyAuditSink:
    """Writes AuditLog rows, one short transaction per event."""

    def __init__(self, session_maker):
        self.session_maker = session_maker

    async def emit(self, event: AuditEvent) -> None:
        async with self.session_maker() as db:
            db.add(AuditLog(
                id=event.id,
                tenant_id=event.tenant_id,
                event_type=event.event_type,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                from_status=event.from_status,
                to_status=event.to_status,
                source=event.source,
                request_id=event.request_id,
                details=event.model_dump(mode="json")["details"],
                explanation=event.explanation,
                created_at=event.created_at,
            ))
            await db.commit()
