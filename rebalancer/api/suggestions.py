"""
Suggestion API Routes

List rebalance suggestions and move them through the approval workflow.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from typing import Dict, List, Optional

from rebalancer.api.deps import get_tenant_id, http_error
from rebalancer.models.base import get_db
from rebalancer.services.approval_workflow import ApprovalWorkflow, suggestion_to_dict
from rebalancer.services.errors import RebalancerError
from rebalancer.utils.logger import log

router = APIRouter(prefix="/suggestions", tags=["suggestions"])


class DecisionRequest(BaseModel):
    action: str  # approve, reject
    actor_id: str
    notes: Optional[str] = None
    qty_override: Optional[int] = None


class BatchDecisionRequest(BaseModel):
    suggestion_ids: List[int] = Field(..., min_length=1)
    action: str
    actor_id: str
    notes: Optional[str] = None
    qty_overrides: Dict[int, int] = {}


class ExecuteRequest(BaseModel):
    actor_id: str
    notes: Optional[str] = None


@router.get("")
async def list_suggestions(
    status: Optional[str] = Query(None, description="pending, approved, rejected, executed, superseded"),
    priority: Optional[str] = Query(None, description="P1 or P2"),
    run_id: Optional[int] = Query(None),
    transfer_type: Optional[str] = Query(None, description="push or lateral"),
    limit: Optional[int] = Query(None, ge=1, le=5000),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Suggestions ordered P1 first, then by potential revenue gain."""
    try:
        workflow = ApprovalWorkflow(db, tenant_id=tenant_id)
        rows = workflow.list_suggestions(
            status=status,
            priority=priority,
            run_id=run_id,
            transfer_type=transfer_type,
            limit=limit,
        )
        return {
            "success": True,
            "data": {
                "total": len(rows),
                "total_units": sum(s.qty for s in rows),
                "suggestions": [suggestion_to_dict(s) for s in rows],
            },
        }
    except Exception as e:
        log.error(f"Error in /suggestions: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/batch-decision")
async def batch_decision(
    request: BatchDecisionRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Approve or reject several suggestions; each one succeeds or fails on its own."""
    try:
        workflow = ApprovalWorkflow(db, tenant_id=tenant_id)
        result = workflow.batch_decide(
            request.suggestion_ids,
            request.action,
            request.actor_id,
            notes=request.notes,
            qty_overrides=request.qty_overrides,
        )
        return {"success": True, "data": result}
    except Exception as e:
        log.error(f"Error in /suggestions/batch-decision: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{suggestion_id}/decision")
async def decide(
    suggestion_id: int,
    request: DecisionRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    try:
        workflow = ApprovalWorkflow(db, tenant_id=tenant_id)
        suggestion = workflow.decide(
            suggestion_id,
            request.action,
            request.actor_id,
            notes=request.notes,
            qty_override=request.qty_override,
        )
        return {"success": True, "data": suggestion_to_dict(suggestion)}
    except RebalancerError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log.error(f"Error in /suggestions/{suggestion_id}/decision: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{suggestion_id}/execute")
async def mark_executed(
    suggestion_id: int,
    request: ExecuteRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Record that an approved transfer physically happened."""
    try:
        workflow = ApprovalWorkflow(db, tenant_id=tenant_id)
        suggestion = workflow.mark_executed(suggestion_id, request.actor_id, notes=request.notes)
        return {"success": True, "data": suggestion_to_dict(suggestion)}
    except RebalancerError as e:
        raise http_error(e)
    except Exception as e:
        log.error(f"Error in /suggestions/{suggestion_id}/execute: {e}")
        raise HTTPException(status_code=500, detail=str(e))
