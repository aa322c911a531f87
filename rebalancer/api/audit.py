"""
Audit trail endpoint
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from rebalancer.api.deps import get_tenant_id
from rebalancer.models.base import get_db
from rebalancer.services.audit_log import AuditLog, entry_to_dict
from rebalancer.utils.logger import log

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/{entity_type}/{entity_id}")
async def get_audit_trail(
    entity_type: str,
    entity_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Every recorded change of an entity, oldest first."""
    try:
        entries = AuditLog(db).trail(entity_type, entity_id, tenant_id=tenant_id)
        return {"success": True, "data": [entry_to_dict(e) for e in entries]}
    except Exception as e:
        log.error(f"Error in /audit/{entity_type}/{entity_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
