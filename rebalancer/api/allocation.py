"""
Allocation API Routes

Trigger allocation runs and inspect the inputs the planners work from:
capacity classification and size-run integrity.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session
from typing import Optional

from rebalancer.api.deps import get_tenant_id, http_error
from rebalancer.config import get_settings
from rebalancer.models.base import get_db
from rebalancer.services.allocation_orchestrator import AllocationOrchestrator, run_to_dict
from rebalancer.services.capacity_monitor import CapacityMonitor
from rebalancer.services.errors import RebalancerError
from rebalancer.services.position_store import PositionDemandStore
from rebalancer.services.size_integrity import SizeIntegrityChecker, broken_results
from rebalancer.utils.logger import log

router = APIRouter(prefix="/allocation", tags=["allocation"])


class TriggerRunRequest(BaseModel):
    run_type: str = "both"
    triggered_by: str = "system"


@router.post("/runs")
async def trigger_run(
    request: TriggerRunRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """
    Run the push and/or lateral planners for the tenant.

    Supersedes the pending suggestions of the previous run of the same type.
    """
    try:
        orchestrator = AllocationOrchestrator(db)
        run = orchestrator.trigger_run(tenant_id, request.run_type, triggered_by=request.triggered_by)
        return {"success": True, "data": run_to_dict(run)}
    except RebalancerError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log.error(f"Error in /allocation/runs: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/runs")
async def list_runs(
    run_type: Optional[str] = Query(None, description="push, lateral or both"),
    status: Optional[str] = Query(None, description="completed or failed"),
    limit: int = Query(20, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Most recent runs first."""
    try:
        runs = AllocationOrchestrator(db).list_runs(tenant_id, run_type=run_type, status=status, limit=limit)
        return {"success": True, "data": [run_to_dict(r) for r in runs]}
    except Exception as e:
        log.error(f"Error in /allocation/runs (list): {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/runs/{run_id}")
async def get_run(
    run_id: int,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    try:
        run = AllocationOrchestrator(db).get_run(tenant_id, run_id)
    except Exception as e:
        log.error(f"Error in /allocation/runs/{run_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    if run is None:
        raise HTTPException(status_code=404, detail={"code": "NotFound", "message": f"Run {run_id} not found"})
    return {"success": True, "data": run_to_dict(run)}


@router.get("/capacity")
async def get_capacity(
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Capacity classification per location from the latest positions."""
    try:
        settings = get_settings()
        snapshot = PositionDemandStore(db, tenant_id).load_snapshot()
        monitor = CapacityMonitor(settings.overload_utilization, settings.has_space_utilization)
        statuses = monitor.assess(snapshot)

        locations = []
        for store_id, status in sorted(statuses.items()):
            store = snapshot.stores[store_id]
            locations.append({
                **status.to_dict(),
                "code": store.code,
                "name": store.name,
                "tier": store.tier,
                "is_warehouse": store.is_warehouse,
            })
        return {
            "success": True,
            "data": {
                "snapshot_date": snapshot.snapshot_date.isoformat() if snapshot.snapshot_date else None,
                "locations": locations,
                "has_space_ranking": monitor.has_space_ranking(statuses),
            },
        }
    except Exception as e:
        log.error(f"Error in /allocation/capacity: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/size-integrity")
async def get_size_integrity(
    store_id: Optional[int] = Query(None, description="Limit to one store"),
    broken_only: bool = Query(False, description="Only (product, store) pairs missing a size"),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    try:
        snapshot = PositionDemandStore(db, tenant_id).load_snapshot()
        results = SizeIntegrityChecker().check(snapshot)
        if broken_only:
            selected = broken_results(results, store_id=store_id)
        else:
            selected = [
                r for _, r in sorted(results.items())
                if store_id is None or r.store_id == store_id
            ]
        return {
            "success": True,
            "data": {
                "snapshot_date": snapshot.snapshot_date.isoformat() if snapshot.snapshot_date else None,
                "total": len(selected),
                "broken": sum(1 for r in selected if r.missing_sizes),
                "results": [r.to_dict() for r in selected],
            },
        }
    except Exception as e:
        log.error(f"Error in /allocation/size-integrity: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/size-integrity/refresh")
async def refresh_size_integrity(
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    """Persist size integrity records for the latest snapshot date."""
    try:
        snapshot = PositionDemandStore(db, tenant_id).load_snapshot()
        counts = SizeIntegrityChecker().refresh_records(db, snapshot)
        return {"success": True, "data": counts}
    except Exception as e:
        log.error(f"Error in /allocation/size-integrity/refresh: {e}")
        raise HTTPException(status_code=500, detail=str(e))
