"""
Append-only audit log.

Rows are inserted and never changed: the mapper rejects flushes that would
update or delete an existing entry.
"""
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index, event
from datetime import datetime

from rebalancer.models.base import Base


class AuditLogEntry(Base):
    """One state change of one entity"""
    __tablename__ = "audit_log_entries"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=True)

    entity_type = Column(String, nullable=False)  # rebalance_suggestion, allocation_run
    entity_id = Column(String, nullable=False)
    action = Column(String, nullable=False)  # created, approved, rejected, executed, superseded, completed, failed

    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)

    performed_by = Column(String, nullable=True)
    performed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        Index('ix_audit_entity', 'entity_type', 'entity_id'),
    )


@event.listens_for(AuditLogEntry, "before_update")
def _reject_update(mapper, connection, target):
    raise ValueError(f"Audit log entries are append-only (entry {target.id})")


@event.listens_for(AuditLogEntry, "before_delete")
def _reject_delete(mapper, connection, target):
    raise ValueError(f"Audit log entries are append-only (entry {target.id})")
