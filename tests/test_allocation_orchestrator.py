"""
Allocation runs end to end against an in-memory database.

Covers persistence, supersession, failure recording, per-tenant locking
and the deadline abort.
"""
from datetime import datetime, timedelta
from itertools import count

import pytest
from sqlalchemy.exc import SQLAlchemyError

from rebalancer.models.allocation import AllocationRun, RebalanceSuggestion, RunLock
from rebalancer.models.audit import AuditLogEntry
from rebalancer.models.catalog import Store
from rebalancer.services.allocation_orchestrator import AllocationOrchestrator, run_to_dict
from rebalancer.services.approval_workflow import ApprovalWorkflow
from rebalancer.services.audit_log import AuditLog, RUN_ENTITY, SUGGESTION_ENTITY
from rebalancer.services.errors import (
    AlreadyRunning,
    NoEligibleCandidates,
    PersistenceFailure,
    PlannerFailure,
    RunAborted,
)

TENANT = "acme"


def _suggestions(db, **filters):
    return db.query(RebalanceSuggestion).filter_by(tenant_id=TENANT, **filters).order_by(RebalanceSuggestion.id).all()


def _add_second_short_store(seed, product):
    store_c = seed.store("store-c", tier="B", capacity=1000)
    seed.position(store_c, product, on_hand=0, safety_stock=10, woc=0.0)
    seed.demand(store_c, product, velocity=2.0)
    return store_c


# ────────────────────────────────────────────
# COMPLETED RUNS
# ────────────────────────────────────────────


class TestCompletedRun:

    def test_simple_push_persisted(self, db, settings, simple_push):
        run = AllocationOrchestrator(db, settings).trigger_run(TENANT, "both", triggered_by="planner@acme")

        assert run.status == "completed"
        assert run.total_suggestions == 1
        assert run.total_units == 15
        assert run.push_units == 15
        assert run.lateral_units == 0
        assert run.p1_suggestions == 1
        assert run.stores_analyzed == 2

        [s] = _suggestions(db)
        assert s.run_id == run.id
        assert s.status == "pending"
        assert s.transfer_type == "push"
        assert s.from_location == simple_push["warehouse"].id
        assert s.to_location == simple_push["store_a"].id
        assert s.to_location_name == "Store-A"
        assert s.qty == s.original_qty == 15
        assert s.priority == "P1"
        assert s.potential_revenue_gain == 200.0

    def test_audit_entries_for_run_and_suggestions(self, db, settings, simple_push):
        run = AllocationOrchestrator(db, settings).trigger_run(TENANT, "push")
        [s] = _suggestions(db)
        audit = AuditLog(db)

        [created] = audit.trail(SUGGESTION_ENTITY, s.id)
        assert created.action == "created"
        assert created.new_values["status"] == "pending"

        [completed] = audit.trail(RUN_ENTITY, run.id)
        assert completed.action == "completed"
        assert completed.new_values["total_suggestions"] == 1

    def test_lock_released_after_run(self, db, settings, simple_push):
        AllocationOrchestrator(db, settings).trigger_run(TENANT, "push")
        assert db.query(RunLock).count() == 0

    def test_run_to_dict(self, db, settings, simple_push):
        run = AllocationOrchestrator(db, settings).trigger_run(TENANT, "push")
        data = run_to_dict(run)
        assert data["status"] == "completed"
        assert data["run_type"] == "push"
        assert data["total_units"] == 15

    def test_unknown_run_type(self, db, settings):
        with pytest.raises(ValueError):
            AllocationOrchestrator(db, settings).trigger_run(TENANT, "sideways")

    def test_list_and_get_runs(self, db, settings, simple_push):
        orchestrator = AllocationOrchestrator(db, settings)
        first = orchestrator.trigger_run(TENANT, "push")
        second = orchestrator.trigger_run(TENANT, "push")

        assert [r.id for r in orchestrator.list_runs(TENANT)] == [second.id, first.id]
        assert orchestrator.get_run(TENANT, first.id).id == first.id
        assert orchestrator.get_run("globex", first.id) is None


# ────────────────────────────────────────────
# SUPERSESSION
# ────────────────────────────────────────────


class TestSupersession:

    def test_new_run_supersedes_pending_only(self, db, settings, seed, simple_push):
        _add_second_short_store(seed, simple_push["product"])
        orchestrator = AllocationOrchestrator(db, settings)

        first = orchestrator.trigger_run(TENANT, "push")
        first_ids = [s.id for s in _suggestions(db, run_id=first.id)]
        assert len(first_ids) == 2
        ApprovalWorkflow(db, TENANT).decide(first_ids[0], "approve", "ops-1")

        second = orchestrator.trigger_run(TENANT, "push")

        old = {s.id: s for s in _suggestions(db, run_id=first.id)}
        assert old[first_ids[0]].status == "approved"
        assert old[first_ids[1]].status == "superseded"
        assert old[first_ids[1]].superseded_by_run_id == second.id
        assert not [s for s in old.values() if s.status == "pending"]

        entries = AuditLog(db).trail(SUGGESTION_ENTITY, first_ids[1])
        assert [e.action for e in entries] == ["created", "superseded"]

    def test_approved_transfer_is_not_proposed_again(self, db, settings, simple_push):
        orchestrator = AllocationOrchestrator(db, settings)
        first = orchestrator.trigger_run(TENANT, "push")
        [approved] = _suggestions(db, run_id=first.id)
        ApprovalWorkflow(db, TENANT).decide(approved.id, "approve", "ops-1")

        with pytest.raises(NoEligibleCandidates):
            orchestrator.trigger_run(TENANT, "push")

        open_to_store_a = [
            (s.status, s.qty)
            for s in _suggestions(db, to_location=simple_push["store_a"].id, sku=approved.sku)
        ]
        assert open_to_store_a == [("approved", 15)]

    def test_pending_from_other_run_type_is_not_duplicated(self, db, settings, simple_push):
        orchestrator = AllocationOrchestrator(db, settings)
        push_run = orchestrator.trigger_run(TENANT, "push")

        with pytest.raises(NoEligibleCandidates):
            orchestrator.trigger_run(TENANT, "both")

        assert [(s.run_id, s.status) for s in _suggestions(db)] == [(push_run.id, "pending")]

    def test_warehouse_units_already_approved_are_not_reallocated(self, db, settings, seed):
        warehouse = seed.store("central", warehouse=True)
        fast = seed.store("fast", capacity=1000)
        slow = seed.store("slow", capacity=1000)
        product = seed.product("tee", price=40.0)
        seed.position(warehouse, product, on_hand=20)
        seed.position(fast, product, on_hand=0, safety_stock=15, woc=0.0)
        seed.position(slow, product, on_hand=0, safety_stock=15, woc=0.0)
        seed.demand(fast, product, velocity=2.0)  # urgency 7.5
        seed.demand(slow, product, velocity=1.0)  # urgency 15

        orchestrator = AllocationOrchestrator(db, settings)
        first = orchestrator.trigger_run(TENANT, "push")
        by_store = {s.to_location: s for s in _suggestions(db, run_id=first.id)}
        assert (by_store[slow.id].qty, by_store[fast.id].qty) == (15, 5)
        ApprovalWorkflow(db, TENANT).decide(by_store[slow.id].id, "approve", "ops-1")

        second = orchestrator.trigger_run(TENANT, "push")

        # 15 of the 20 warehouse units are already promised to the slow store
        assert [(s.to_location, s.qty) for s in _suggestions(db, run_id=second.id)] == [(fast.id, 5)]

    def test_other_run_types_untouched(self, db, settings, simple_push):
        orchestrator = AllocationOrchestrator(db, settings)
        push_run = orchestrator.trigger_run(TENANT, "push")

        with pytest.raises(NoEligibleCandidates):
            orchestrator.trigger_run(TENANT, "lateral")

        assert [s.status for s in _suggestions(db, run_id=push_run.id)] == ["pending"]

    def test_pending_suggestions_belong_to_latest_run(self, db, settings, seed, simple_push):
        _add_second_short_store(seed, simple_push["product"])
        orchestrator = AllocationOrchestrator(db, settings)
        for _ in range(3):
            latest = orchestrator.trigger_run(TENANT, "both")

        pending = _suggestions(db, status="pending")
        assert pending
        assert {s.run_id for s in pending} == {latest.id}

    def test_runs_are_deterministic(self, db, settings, seed, simple_push):
        _add_second_short_store(seed, simple_push["product"])
        orchestrator = AllocationOrchestrator(db, settings)

        def shape(run):
            return [
                (s.transfer_type, s.sku, s.from_location, s.to_location, s.qty, s.priority, s.potential_revenue_gain)
                for s in _suggestions(db, run_id=run.id)
            ]

        first = orchestrator.trigger_run(TENANT, "both")
        second = orchestrator.trigger_run(TENANT, "both")
        assert shape(first) == shape(second)


# ────────────────────────────────────────────
# FAILURES
# ────────────────────────────────────────────


class TestFailures:

    def test_zero_result_records_failed_run(self, db, settings, seed):
        store = seed.store("full", capacity=100)
        product = seed.product("tee")
        seed.position(store, product, on_hand=90, safety_stock=10, woc=9.0)
        seed.demand(store, product, velocity=1.0)

        with pytest.raises(NoEligibleCandidates) as exc:
            AllocationOrchestrator(db, settings).trigger_run(TENANT, "both")

        run = db.get(AllocationRun, exc.value.run_id)
        assert run.status == "failed"
        assert run.failure_reason == "NoEligibleCandidates"
        assert _suggestions(db) == []
        assert db.query(RunLock).count() == 0

    def test_persistence_failure_leaves_no_partial_data(self, db, settings, simple_push, monkeypatch):
        orchestrator = AllocationOrchestrator(db, settings)
        first = orchestrator.trigger_run(TENANT, "push")

        def boom(*args, **kwargs):
            raise SQLAlchemyError("disk full")

        monkeypatch.setattr(orchestrator, "_supersede_pending", boom)
        with pytest.raises(PersistenceFailure) as exc:
            orchestrator.trigger_run(TENANT, "push")

        failed = db.get(AllocationRun, exc.value.run_id)
        assert failed.status == "failed"
        assert failed.failure_reason == "PersistenceFailure"
        assert _suggestions(db, run_id=failed.id) == []
        assert [s.status for s in _suggestions(db, run_id=first.id)] == ["pending"]

    def test_planner_crash_is_recorded(self, db, settings, simple_push, monkeypatch):
        orchestrator = AllocationOrchestrator(db, settings)

        def crash(*args, **kwargs):
            raise RuntimeError("bad snapshot")

        monkeypatch.setattr(orchestrator.push_planner, "plan", crash)
        with pytest.raises(PlannerFailure) as exc:
            orchestrator.trigger_run(TENANT, "push")

        failed = db.get(AllocationRun, exc.value.run_id)
        assert failed.failure_reason == "PlannerFailure"
        assert "bad snapshot" in failed.failure_detail
        [entry] = AuditLog(db).trail(RUN_ENTITY, failed.id)
        assert entry.action == "failed"

    def test_timeout_aborts_without_writing(self, db, settings, simple_push):
        settings.run_timeout_seconds = 5
        ticks = count(0, 10)
        orchestrator = AllocationOrchestrator(db, settings, clock=lambda: next(ticks))

        with pytest.raises(RunAborted):
            orchestrator.trigger_run(TENANT, "both")

        assert db.query(AllocationRun).count() == 0
        assert db.query(RebalanceSuggestion).count() == 0
        assert db.query(AuditLogEntry).count() == 0
        assert db.query(RunLock).count() == 0


# ────────────────────────────────────────────
# LOCKING
# ────────────────────────────────────────────


class TestRunLock:

    def test_second_run_rejected_while_locked(self, db, settings, simple_push):
        now = datetime.utcnow()
        db.add(RunLock(tenant_id=TENANT, run_token="other", acquired_at=now, expires_at=now + timedelta(minutes=5)))
        db.commit()

        with pytest.raises(AlreadyRunning):
            AllocationOrchestrator(db, settings).trigger_run(TENANT, "push")

        assert db.query(AllocationRun).count() == 0
        assert db.query(RunLock).one().run_token == "other"

    def test_expired_lock_is_reclaimed(self, db, settings, simple_push):
        past = datetime.utcnow() - timedelta(hours=2)
        db.add(RunLock(tenant_id=TENANT, run_token="stale", acquired_at=past, expires_at=past + timedelta(minutes=15)))
        db.commit()

        run = AllocationOrchestrator(db, settings).trigger_run(TENANT, "push")
        assert run.status == "completed"
        assert db.query(RunLock).count() == 0

    def test_lock_is_per_tenant(self, db, settings, simple_push):
        now = datetime.utcnow()
        db.add(RunLock(tenant_id="globex", run_token="other", acquired_at=now, expires_at=now + timedelta(minutes=5)))
        db.commit()

        run = AllocationOrchestrator(db, settings).trigger_run(TENANT, "push")
        assert run.status == "completed"

    def test_lock_contention_leaves_caller_session_alone(self, db, settings, simple_push):
        now = datetime.utcnow()
        db.add(RunLock(tenant_id=TENANT, run_token="other", acquired_at=now, expires_at=now + timedelta(minutes=5)))
        db.commit()
        draft = Store(tenant_id=TENANT, code="draft", name="Draft", tier="B", capacity=0, active=True, location_type="store")
        db.add(draft)

        with pytest.raises(AlreadyRunning):
            AllocationOrchestrator(db, settings).trigger_run(TENANT, "push")

        assert draft in db.new

    def test_lock_renewed_between_stages(self, db, settings, simple_push, monkeypatch):
        orchestrator = AllocationOrchestrator(db, settings)
        plan_push = orchestrator.push_planner.plan
        plan_lateral = orchestrator.lateral_planner.plan
        seen = []

        def push_then_expire_lock(*args, **kwargs):
            result = plan_push(*args, **kwargs)
            db.query(RunLock).update(
                {"expires_at": datetime.utcnow() - timedelta(minutes=1)}, synchronize_session=False
            )
            db.commit()
            return result

        def lateral_watching_lock(*args, **kwargs):
            seen.append(db.query(RunLock.expires_at).scalar())
            return plan_lateral(*args, **kwargs)

        monkeypatch.setattr(orchestrator.push_planner, "plan", push_then_expire_lock)
        monkeypatch.setattr(orchestrator.lateral_planner, "plan", lateral_watching_lock)

        run = orchestrator.trigger_run(TENANT, "both")

        assert run.status == "completed"
        assert seen[0] > datetime.utcnow()

    def test_reclaimed_lock_aborts_without_writing(self, db, settings, simple_push, monkeypatch):
        orchestrator = AllocationOrchestrator(db, settings)
        plan_push = orchestrator.push_planner.plan

        def push_then_lose_lock(*args, **kwargs):
            result = plan_push(*args, **kwargs)
            # Another worker treated the lock as abandoned and took it over
            now = datetime.utcnow()
            db.query(RunLock).delete(synchronize_session=False)
            db.add(RunLock(tenant_id=TENANT, run_token="other", acquired_at=now, expires_at=now + timedelta(minutes=5)))
            db.commit()
            return result

        monkeypatch.setattr(orchestrator.push_planner, "plan", push_then_lose_lock)

        with pytest.raises(RunAborted):
            orchestrator.trigger_run(TENANT, "push")

        assert db.query(AllocationRun).count() == 0
        assert db.query(RebalanceSuggestion).count() == 0
        assert db.query(RunLock).one().run_token == "other"
