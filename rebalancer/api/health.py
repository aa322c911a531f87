"""
Health check and status endpoints
"""
from fastapi import APIRouter
from datetime import datetime
from rebalancer.config import get_settings
from rebalancer import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status():
    """Get system status"""
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "thresholds": {
            "push_threshold_weeks": settings.push_threshold_weeks,
            "surplus_threshold_weeks": settings.surplus_threshold_weeks,
            "overload_utilization": settings.overload_utilization,
            "has_space_utilization": settings.has_space_utilization,
            "lead_time_days": settings.lead_time_days,
            "lateral_same_tier_only": settings.lateral_same_tier_only,
        },
        "scheduler": {
            "enabled": settings.enable_scheduler,
            "schedule": settings.allocation_schedule,
            "tenants": settings.scheduled_tenant_ids,
        },
        "timestamp": datetime.utcnow().isoformat()
    }
