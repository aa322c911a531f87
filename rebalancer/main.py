"""
Inventory Rebalancing Engine
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from rebalancer.config import get_settings
from rebalancer.utils.logger import log
from rebalancer import __version__

# Import routers
from rebalancer.api import health, allocation, suggestions, audit

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    try:
        from rebalancer.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # Time-triggered allocation runs
    if settings.enable_scheduler:
        try:
            from rebalancer.scheduler import start_scheduler
            start_scheduler()
        except Exception as e:
            log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    if settings.enable_scheduler:
        from rebalancer.scheduler import stop_scheduler
        stop_scheduler()
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Inventory allocation & rebalancing engine

    - Push planning: central warehouse stock to understocked stores
    - Lateral planning: surplus stores to short or size-broken stores
    - Capacity-aware destinations, size-run integrity checks
    - P1/P2 prioritization by stockout date and revenue at risk
    - Approval workflow with a full audit trail
    """,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(allocation.router)
app.include_router(suggestions.router)
app.include_router(audit.router)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "app": settings.app_name,
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "status": "/status",
        "endpoints": {
            "trigger_run": "POST /allocation/runs",
            "list_runs": "GET /allocation/runs",
            "capacity": "GET /allocation/capacity",
            "size_integrity": "GET /allocation/size-integrity",
            "list_suggestions": "GET /suggestions",
            "decide": "POST /suggestions/{id}/decision",
            "batch_decide": "POST /suggestions/batch-decision",
            "execute": "POST /suggestions/{id}/execute",
            "audit_trail": "GET /audit/{entity_type}/{entity_id}",
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "rebalancer.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
