"""
Audit Log Service

Append-only history of every state change.

record() only adds the entry to the caller's session; the caller commits it
together with the change it describes, so a transition and its audit entry
become visible atomically.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from rebalancer.models.audit import AuditLogEntry

SUGGESTION_ENTITY = "rebalance_suggestion"
RUN_ENTITY = "allocation_run"


class AuditLog:
    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        entity_type: str,
        entity_id,
        action: str,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        performed_by: Optional[str] = None,
        notes: Optional[str] = None,
        tenant_id: Optional[str] = None,
        performed_at: Optional[datetime] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            old_values=old_values,
            new_values=new_values,
            performed_by=performed_by,
            performed_at=performed_at or datetime.utcnow(),
            notes=notes,
        )
        self.db.add(entry)
        return entry

    def trail(self, entity_type: str, entity_id, tenant_id: Optional[str] = None) -> List[AuditLogEntry]:
        """All entries for an entity, oldest first."""
        query = self.db.query(AuditLogEntry).filter(
            AuditLogEntry.entity_type == entity_type,
            AuditLogEntry.entity_id == str(entity_id),
        )
        if tenant_id is not None:
            query = query.filter(AuditLogEntry.tenant_id == tenant_id)
        return query.order_by(AuditLogEntry.performed_at.asc(), AuditLogEntry.id.asc()).all()


def entry_to_dict(entry: AuditLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "action": entry.action,
        "old_values": entry.old_values,
        "new_values": entry.new_values,
        "performed_by": entry.performed_by,
        "performed_at": entry.performed_at.isoformat() if entry.performed_at else None,
        "notes": entry.notes,
    }
