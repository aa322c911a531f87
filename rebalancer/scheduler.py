"""
Scheduler for time-triggered allocation runs

Uses APScheduler to run a "both" allocation for every configured tenant on
the `allocation_schedule` cron expression.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from zoneinfo import ZoneInfo
import asyncio
import time

from rebalancer.config import get_settings
from rebalancer.models.base import SessionLocal
from rebalancer.services.allocation_orchestrator import AllocationOrchestrator
from rebalancer.services.errors import AlreadyRunning, NoEligibleCandidates, RebalancerError
from rebalancer.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler()


def run_allocation(tenant_id: str, run_type: str = "both") -> dict:
    """Run one allocation for a tenant in its own session and summarize the outcome."""
    start = time.time()
    db = SessionLocal()
    try:
        run = AllocationOrchestrator(db).trigger_run(tenant_id, run_type, triggered_by="scheduler")
        log.info(
            f"Scheduled allocation for {tenant_id}: run {run.id}, "
            f"{run.total_suggestions} suggestions in {time.time() - start:.1f}s"
        )
        return {"success": True, "run_id": run.id, "total_suggestions": run.total_suggestions}
    except AlreadyRunning as e:
        log.warning(f"Scheduled allocation skipped: {e.message}")
        return {"success": False, "error": e.code}
    except NoEligibleCandidates as e:
        log.info(f"Scheduled allocation for {tenant_id}: {e.message}")
        return {"success": False, "error": e.code, "run_id": e.run_id}
    except RebalancerError as e:
        log.error(f"Scheduled allocation for {tenant_id} failed: {e.message}")
        return {"success": False, "error": e.code}
    finally:
        db.close()


async def run_scheduled_allocations():
    """Allocation for every configured tenant, one after another."""
    tenants = settings.scheduled_tenant_ids
    log.info(f"Starting scheduled allocation for {len(tenants)} tenants...")
    for tenant_id in tenants:
        try:
            run_allocation(tenant_id)
        except Exception as e:
            log.error(f"Scheduled allocation for {tenant_id} crashed: {str(e)}")


def setup_scheduler():
    """
    Configure the scheduler.

    The cron expression and timezone come from settings
    (`allocation_schedule`, `scheduler_timezone`); default is daily 4:00am.
    """
    scheduler.add_job(
        run_scheduled_allocations,
        trigger=CronTrigger.from_crontab(
            settings.allocation_schedule,
            timezone=ZoneInfo(settings.scheduler_timezone),
        ),
        id='allocation_run',
        name='Push & Lateral Allocation Run',
        replace_existing=True,
        max_instances=1
    )


def start_scheduler():
    """Start the scheduler"""
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown()
        log.info("Scheduler stopped")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs

    Returns:
        List of job info dicts
    """
    jobs = []

    for job in scheduler.get_jobs():
        next_run = getattr(job, "next_run_time", None)

        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        print("Usage: python -m rebalancer.scheduler <command> [tenant_id] [run_type]")
        print("\nCommands:")
        print("  start                      Start the scheduler")
        print("  run <tenant> [run_type]    Run an allocation now (push, lateral, both)")
        print("  list                       List all scheduled jobs")
        sys.exit(1)

    command = sys.argv[1]

    if command == "start":
        print("Starting scheduler...")
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        start_scheduler()
        try:
            loop.run_forever()
        except (KeyboardInterrupt, SystemExit):
            print("\nShutting down scheduler...")
            stop_scheduler()

    elif command == "run":
        if len(sys.argv) < 3:
            print("Error: Please specify a tenant id")
            sys.exit(1)

        run_type = sys.argv[3] if len(sys.argv) > 3 else "both"
        result = run_allocation(sys.argv[2], run_type)

        if result['success']:
            print(f"✓ Run {result['run_id']}: {result['total_suggestions']} suggestions")
        else:
            print(f"✗ {result['error']}")
            sys.exit(1)

    elif command == "list":
        setup_scheduler()
        print("\nScheduled Jobs:")
        print("-" * 80)

        jobs = get_scheduled_jobs()

        if not jobs:
            print("No jobs scheduled")
        else:
            for job in jobs:
                print(f"\nID:       {job['id']}")
                print(f"Name:     {job['name']}")
                print(f"Next Run: {job['next_run']}")
                print(f"Trigger:  {job['trigger']}")

    else:
        print(f"Unknown command: {command}")
        sys.exit(1)
