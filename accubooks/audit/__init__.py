"""Audit trail for automation, intelligence and security events."""
from accubooks.audit.models import AuditLog
from accubooks.audit.sinks import AuditEvent, AuditSink, InMemoryAuditSink, SqlAlchemyAuditSink
from accubooks.audit.services import AuditService

__all__ = ["AuditLog", "AuditEvent", "AuditSink", "InMemoryAuditSink", "SqlAlchemyAuditSink", "AuditService"]
