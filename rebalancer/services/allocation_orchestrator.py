"""
Allocation Run Orchestrator

Runs the planners for one tenant and persists the outcome atomically:

    acquire tenant lock
      -> load snapshot + open commitments -> capacity + size integrity
      -> push plan -> lateral plan (shared capacity ledger, lock renewed)
      -> score -> one transaction:
           supersede previous pending suggestions of the same run type
           insert run + pending suggestions + audit entries
    release tenant lock

Nothing is written until that final transaction. A run that fails is
recorded as a `failed` row in its own transaction; an aborted run writes
nothing at all.
"""
import time
import uuid
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rebalancer.config import Settings, get_settings
from rebalancer.models.allocation import AllocationRun, RebalanceSuggestion, RunLock, RUN_TYPES
from rebalancer.services.audit_log import AuditLog, RUN_ENTITY, SUGGESTION_ENTITY
from rebalancer.services.candidates import TransferCandidate
from rebalancer.services.capacity_monitor import CapacityLedger, CapacityMonitor
from rebalancer.services.errors import (
    AlreadyRunning,
    NoEligibleCandidates,
    PersistenceFailure,
    PlannerFailure,
    RebalancerError,
    RunAborted,
)
from rebalancer.services.lateral_planner import LateralPlanner
from rebalancer.services.position_store import InventorySnapshot, PositionDemandStore
from rebalancer.services.priority_classifier import resolve_unit_price, score_candidate
from rebalancer.services.push_planner import PushPlanner
from rebalancer.services.size_integrity import SizeIntegrityChecker
from rebalancer.utils.logger import log


def build_planners(settings: Settings) -> Tuple[PushPlanner, LateralPlanner]:
    push = PushPlanner(
        push_threshold_weeks=settings.push_threshold_weeks,
        velocity_epsilon=settings.velocity_epsilon,
    )
    lateral = LateralPlanner(
        push_threshold_weeks=settings.push_threshold_weeks,
        surplus_threshold_weeks=settings.surplus_threshold_weeks,
        velocity_epsilon=settings.velocity_epsilon,
        size_fill_units=settings.size_fill_units,
        same_tier_only=settings.lateral_same_tier_only,
    )
    return push, lateral


class AllocationOrchestrator:
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.audit = AuditLog(db)
        self.capacity_monitor = CapacityMonitor(
            overload_threshold=self.settings.overload_utilization,
            has_space_threshold=self.settings.has_space_utilization,
        )
        self.size_checker = SizeIntegrityChecker()
        self.push_planner, self.lateral_planner = build_planners(self.settings)
        self._held_lock: Optional[Tuple[str, str]] = None

    # ─────────────────────────────────────────────
    # TRIGGER
    # ─────────────────────────────────────────────

    def trigger_run(
        self,
        tenant_id: str,
        run_type: str = "both",
        triggered_by: str = "system",
        today: Optional[date] = None,
    ) -> AllocationRun:
        """
        Execute one allocation run for a tenant.

        The run commits (or, on failure, rolls back) `self.db`, so pass a
        session without unrelated pending work. The tenant lock lives in a
        separate session and never touches it.

        Raises AlreadyRunning, NoEligibleCandidates, PlannerFailure,
        PersistenceFailure or RunAborted.
        """
        if run_type not in RUN_TYPES:
            raise ValueError(f"Unknown run_type '{run_type}', expected one of {list(RUN_TYPES)}")

        token = self._acquire_lock(tenant_id)
        try:
            return self._execute(tenant_id, run_type, triggered_by, today or date.today())
        finally:
            self._release_lock(tenant_id, token)

    def _execute(self, tenant_id: str, run_type: str, triggered_by: str, today: date) -> AllocationRun:
        started = self.clock()
        created_at = datetime.utcnow()
        log.info(f"Allocation run ({run_type}) started for tenant {tenant_id} by {triggered_by}")

        snapshot: Optional[InventorySnapshot] = None
        try:
            snapshot = PositionDemandStore(self.db, tenant_id).load_snapshot()
            self._check_deadline(started, "loading the snapshot")

            commitments = self._open_commitments(tenant_id, run_type)
            candidates = self._plan(snapshot, run_type, started, commitments)
        except RebalancerError:
            raise
        except Exception as e:
            log.error(f"Planning failed for tenant {tenant_id}: {e}")
            failed_id = self._record_failure(
                tenant_id, run_type, triggered_by, created_at, snapshot, PlannerFailure.code, str(e)
            )
            raise PlannerFailure(tenant_id, str(e), run_id=failed_id) from e

        if not candidates:
            log.warning(f"Allocation run ({run_type}) for tenant {tenant_id} produced no candidates")
            failed_id = self._record_failure(
                tenant_id, run_type, triggered_by, created_at, snapshot,
                NoEligibleCandidates.code, "planners produced no transfers",
            )
            raise NoEligibleCandidates(tenant_id, run_type, run_id=failed_id)

        suggestions = self._score(tenant_id, snapshot, candidates, today)
        self._check_deadline(started, "scoring")

        run = self._persist(tenant_id, run_type, triggered_by, created_at, snapshot, suggestions)
        log.info(
            f"Allocation run {run.id} ({run_type}) completed for tenant {tenant_id}: "
            f"{run.total_suggestions} suggestions, {run.total_units} units, "
            f"{run.p1_suggestions} P1 in {self.clock() - started:.2f}s"
        )
        return run

    # ─────────────────────────────────────────────
    # PLANNING & SCORING
    # ─────────────────────────────────────────────

    def _open_commitments(self, tenant_id: str, run_type: str) -> List[RebalanceSuggestion]:
        """
        Suggestions this run must plan around rather than repeat.

        Approved-but-not-executed transfers of any run type, plus pending
        ones from other run types. Pending suggestions of this run type are
        about to be superseded, so they are left out.
        """
        return (
            self.db.query(RebalanceSuggestion)
            .join(AllocationRun, RebalanceSuggestion.run_id == AllocationRun.id)
            .filter(
                RebalanceSuggestion.tenant_id == tenant_id,
                or_(
                    RebalanceSuggestion.status == "approved",
                    and_(
                        RebalanceSuggestion.status == "pending",
                        AllocationRun.run_type != run_type,
                    ),
                ),
            )
            .order_by(RebalanceSuggestion.id)
            .all()
        )

    def _plan(
        self,
        snapshot: InventorySnapshot,
        run_type: str,
        started: float,
        commitments: Optional[List[RebalanceSuggestion]] = None,
    ) -> List[TransferCandidate]:
        statuses = self.capacity_monitor.assess(snapshot)
        ledger = CapacityLedger(statuses, self.settings.overload_utilization)
        inbound: Dict[Tuple[int, str, int], int] = {}
        committed_out: Dict[Tuple[int, str, int], int] = {}

        for s in commitments or []:
            to_key = (s.product_id, s.sku, s.to_location)
            from_key = (s.product_id, s.sku, s.from_location)
            inbound[to_key] = inbound.get(to_key, 0) + s.qty
            committed_out[from_key] = committed_out.get(from_key, 0) + s.qty
            ledger.reserve(s.to_location, s.qty)
        if commitments:
            log.info(
                f"Planning around {len(commitments)} open suggestions "
                f"({sum(s.qty for s in commitments)} units) for tenant {snapshot.tenant_id}"
            )

        candidates: List[TransferCandidate] = []
        if run_type in ("push", "both"):
            candidates.extend(self.push_planner.plan(snapshot, statuses, ledger, inbound, committed_out))
            self._check_deadline(started, "push planning")

        if run_type in ("lateral", "both"):
            size_results = self.size_checker.check(snapshot)
            candidates.extend(
                self.lateral_planner.plan(snapshot, statuses, size_results, ledger, inbound, committed_out)
            )
            self._check_deadline(started, "lateral planning")

        return candidates

    def _score(
        self,
        tenant_id: str,
        snapshot: InventorySnapshot,
        candidates: List[TransferCandidate],
        today: date,
    ) -> List[RebalanceSuggestion]:
        scored = []
        for c in sorted(candidates, key=lambda c: c.sort_key()):
            price = resolve_unit_price(c.product_id, c.sku, snapshot.sku_prices, snapshot.product_prices)
            score = score_candidate(
                c,
                sales_velocity=snapshot.velocity(c.product_id, c.to_location),
                unit_price=price,
                today=today,
                lead_time_days=self.settings.lead_time_days,
                materiality_floor=self.settings.materiality_floor,
                logistics_cost_per_unit=self.settings.logistics_cost_per_unit,
            )
            scored.append((c, score))

        # P1 first, then highest gain; the candidate key settles ties
        scored.sort(key=lambda cs: (cs[1].priority, -cs[1].potential_revenue_gain, cs[0].sort_key()))

        suggestions = []
        for c, score in scored:
            source = snapshot.store(c.from_location)
            destination = snapshot.store(c.to_location)
            suggestions.append(
                RebalanceSuggestion(
                    tenant_id=tenant_id,
                    product_id=c.product_id,
                    sku=c.sku,
                    size_code=c.size_code,
                    transfer_type=c.transfer_type,
                    from_location=c.from_location,
                    to_location=c.to_location,
                    from_location_name=source.label if source else None,
                    to_location_name=destination.label if destination else None,
                    qty=c.qty,
                    original_qty=c.qty,
                    priority=score.priority,
                    potential_revenue_gain=score.potential_revenue_gain,
                    revenue_at_risk=score.revenue_at_risk,
                    projected_stockout_date=score.projected_stockout_date,
                    from_weeks_cover=c.from_weeks_cover,
                    to_weeks_cover=c.to_weeks_cover,
                    logistics_cost_estimate=score.logistics_cost_estimate,
                    net_benefit=score.net_benefit,
                    reason=score.reason,
                    status="pending",
                )
            )
        return suggestions

    # ─────────────────────────────────────────────
    # PERSISTENCE
    # ─────────────────────────────────────────────

    def _persist(
        self,
        tenant_id: str,
        run_type: str,
        triggered_by: str,
        created_at: datetime,
        snapshot: InventorySnapshot,
        suggestions: List[RebalanceSuggestion],
    ) -> AllocationRun:
        now = datetime.utcnow()
        try:
            run = AllocationRun(
                tenant_id=tenant_id,
                run_type=run_type,
                status="completed",
                triggered_by=triggered_by,
                snapshot_date=snapshot.snapshot_date,
                created_at=created_at,
                completed_at=now,
                stores_analyzed=len(snapshot.retail_stores()),
                skipped_rows=snapshot.skipped_rows,
                **self._totals(suggestions),
            )
            self.db.add(run)
            self.db.flush()

            superseded = self._supersede_pending(tenant_id, run_type, run.id, triggered_by, now)

            for s in suggestions:
                s.run_id = run.id
                s.created_at = now
            self.db.add_all(suggestions)
            self.db.flush()

            for s in suggestions:
                self.audit.record(
                    SUGGESTION_ENTITY,
                    s.id,
                    "created",
                    new_values={
                        "status": "pending",
                        "run_id": run.id,
                        "qty": s.qty,
                        "priority": s.priority,
                    },
                    performed_by=triggered_by,
                    tenant_id=tenant_id,
                    performed_at=now,
                )
            self.audit.record(
                RUN_ENTITY,
                run.id,
                "completed",
                old_values={"status": "created"},
                new_values={
                    "status": "completed",
                    "run_type": run_type,
                    "total_suggestions": run.total_suggestions,
                    "total_units": run.total_units,
                    "superseded": superseded,
                },
                performed_by=triggered_by,
                tenant_id=tenant_id,
                performed_at=now,
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"Failed to persist allocation run for tenant {tenant_id}: {e}")
            failed_id = self._record_failure(
                tenant_id, run_type, triggered_by, created_at, snapshot, PersistenceFailure.code, str(e)
            )
            raise PersistenceFailure(tenant_id, str(e), run_id=failed_id) from e

        self.db.refresh(run)
        if superseded:
            log.info(f"Run {run.id} superseded {superseded} pending suggestions for tenant {tenant_id}")
        return run

    def _supersede_pending(
        self,
        tenant_id: str,
        run_type: str,
        new_run_id: int,
        triggered_by: str,
        now: datetime,
    ) -> int:
        """Mark still-pending suggestions of earlier runs of this type as superseded."""
        pending_ids = [
            row.id
            for row in self.db.query(RebalanceSuggestion.id)
            .join(AllocationRun, RebalanceSuggestion.run_id == AllocationRun.id)
            .filter(
                RebalanceSuggestion.tenant_id == tenant_id,
                RebalanceSuggestion.status == "pending",
                AllocationRun.run_type == run_type,
                AllocationRun.id != new_run_id,
            )
            .order_by(RebalanceSuggestion.id)
            .all()
        ]

        count = 0
        for suggestion_id in pending_ids:
            # Same compare-and-set as the workflow; a concurrent approval wins
            updated = (
                self.db.query(RebalanceSuggestion)
                .filter(
                    RebalanceSuggestion.id == suggestion_id,
                    RebalanceSuggestion.status == "pending",
                )
                .update(
                    {"status": "superseded", "superseded_by_run_id": new_run_id},
                    synchronize_session=False,
                )
            )
            if not updated:
                continue
            self.audit.record(
                SUGGESTION_ENTITY,
                suggestion_id,
                "superseded",
                old_values={"status": "pending"},
                new_values={"status": "superseded", "superseded_by_run_id": new_run_id},
                performed_by=triggered_by,
                tenant_id=tenant_id,
                performed_at=now,
            )
            count += 1
        return count

    def _record_failure(
        self,
        tenant_id: str,
        run_type: str,
        triggered_by: str,
        created_at: datetime,
        snapshot: Optional[InventorySnapshot],
        reason: str,
        detail: str,
    ) -> Optional[int]:
        """Persist a failed run row in its own transaction. Returns its id, or None."""
        self.db.rollback()
        try:
            run = AllocationRun(
                tenant_id=tenant_id,
                run_type=run_type,
                status="failed",
                failure_reason=reason,
                failure_detail=detail[:2000] if detail else None,
                triggered_by=triggered_by,
                snapshot_date=snapshot.snapshot_date if snapshot else None,
                created_at=created_at,
                completed_at=datetime.utcnow(),
                stores_analyzed=len(snapshot.retail_stores()) if snapshot else 0,
                skipped_rows=snapshot.skipped_rows if snapshot else 0,
            )
            self.db.add(run)
            self.db.flush()
            self.audit.record(
                RUN_ENTITY,
                run.id,
                "failed",
                old_values={"status": "created"},
                new_values={"status": "failed", "failure_reason": reason},
                performed_by=triggered_by,
                tenant_id=tenant_id,
                notes=detail[:500] if detail else None,
            )
            self.db.commit()
            return run.id
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"Could not record failed run for tenant {tenant_id}: {e}")
            return None

    @staticmethod
    def _totals(suggestions: List[RebalanceSuggestion]) -> Dict[str, object]:
        push = [s for s in suggestions if s.transfer_type == "push"]
        lateral = [s for s in suggestions if s.transfer_type == "lateral"]
        return {
            "total_suggestions": len(suggestions),
            "total_units": sum(s.qty for s in suggestions),
            "push_suggestions": len(push),
            "push_units": sum(s.qty for s in push),
            "lateral_suggestions": len(lateral),
            "lateral_units": sum(s.qty for s in lateral),
            "p1_suggestions": sum(1 for s in suggestions if s.priority == "P1"),
            "total_revenue_gain": round(sum(s.potential_revenue_gain for s in suggestions), 2),
        }

    # ─────────────────────────────────────────────
    # LOCKING & DEADLINE
    # ─────────────────────────────────────────────

    def _lock_session(self) -> Session:
        # Lock rows get their own session so the caller's transaction is never
        # committed or rolled back by lock bookkeeping
        return Session(bind=self.db.get_bind())

    def _acquire_lock(self, tenant_id: str) -> str:
        now = datetime.utcnow()
        token = uuid.uuid4().hex
        with self._lock_session() as lock_db:
            try:
                lock_db.query(RunLock).filter(
                    RunLock.tenant_id == tenant_id,
                    RunLock.expires_at < now,
                ).delete(synchronize_session=False)
                lock_db.add(RunLock(
                    tenant_id=tenant_id,
                    run_token=token,
                    acquired_at=now,
                    expires_at=now + timedelta(seconds=self.settings.run_lock_ttl_seconds),
                ))
                lock_db.commit()
            except IntegrityError:
                lock_db.rollback()
                log.warning(f"Allocation run already in progress for tenant {tenant_id}")
                raise AlreadyRunning(tenant_id)
        self._held_lock = (tenant_id, token)
        return token

    def _renew_lock(self, stage: str) -> None:
        """Push the held lock's expiry forward; abort if another run reclaimed it."""
        if self._held_lock is None:
            return
        tenant_id, token = self._held_lock
        with self._lock_session() as lock_db:
            renewed = lock_db.query(RunLock).filter(
                RunLock.tenant_id == tenant_id,
                RunLock.run_token == token,
            ).update(
                {"expires_at": datetime.utcnow() + timedelta(seconds=self.settings.run_lock_ttl_seconds)},
                synchronize_session=False,
            )
            lock_db.commit()
        if not renewed:
            log.warning(f"Run lock for tenant {tenant_id} was reclaimed while {stage}")
            raise RunAborted(f"Run lock for tenant {tenant_id} was lost while {stage}; nothing was written")

    def _release_lock(self, tenant_id: str, token: str) -> None:
        self._held_lock = None
        with self._lock_session() as lock_db:
            try:
                lock_db.query(RunLock).filter(
                    RunLock.tenant_id == tenant_id,
                    RunLock.run_token == token,
                ).delete(synchronize_session=False)
                lock_db.commit()
            except SQLAlchemyError as e:
                lock_db.rollback()
                log.error(f"Could not release run lock for tenant {tenant_id}, it expires on its own: {e}")

    def _check_deadline(self, started: float, stage: str) -> None:
        """Abort once `run_timeout_seconds` has passed, otherwise renew the run lock."""
        timeout = self.settings.run_timeout_seconds
        if timeout and timeout > 0:
            elapsed = self.clock() - started
            if elapsed > timeout:
                log.warning(f"Allocation run aborted after {elapsed:.1f}s while {stage}")
                raise RunAborted(f"Run exceeded {timeout}s while {stage}; nothing was written")
        self._renew_lock(stage)


    # ─────────────────────────────────────────────
    # READS
    # ─────────────────────────────────────────────

    def list_runs(
        self,
        tenant_id: str,
        run_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 20,
    ) -> List[AllocationRun]:
        query = self.db.query(AllocationRun).filter(AllocationRun.tenant_id == tenant_id)
        if run_type:
            query = query.filter(AllocationRun.run_type == run_type)
        if status:
            query = query.filter(AllocationRun.status == status)
        return query.order_by(AllocationRun.created_at.desc(), AllocationRun.id.desc()).limit(limit).all()

    def get_run(self, tenant_id: str, run_id: int) -> Optional[AllocationRun]:
        return (
            self.db.query(AllocationRun)
            .filter(AllocationRun.tenant_id == tenant_id, AllocationRun.id == run_id)
            .first()
        )


def run_to_dict(run: AllocationRun) -> dict:
    return {
        "id": run.id,
        "run_type": run.run_type,
        "status": run.status,
        "failure_reason": run.failure_reason,
        "failure_detail": run.failure_detail,
        "triggered_by": run.triggered_by,
        "snapshot_date": run.snapshot_date.isoformat() if run.snapshot_date else None,
        "created_at": run.created_at.isoformat() if run.created_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "total_suggestions": run.total_suggestions,
        "total_units": run.total_units,
        "push_suggestions": run.push_suggestions,
        "push_units": run.push_units,
        "lateral_suggestions": run.lateral_suggestions,
        "lateral_units": run.lateral_units,
        "p1_suggestions": run.p1_suggestions,
        "total_revenue_gain": run.total_revenue_gain,
        "stores_analyzed": run.stores_analyzed,
        "skipped_rows": run.skipped_rows,
    }
