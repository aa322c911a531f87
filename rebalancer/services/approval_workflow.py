"""
Approval Workflow

Operator decisions on rebalance suggestions.

    pending  --approve-->  approved  --execute-->  executed
    pending  --reject--->  rejected
    pending  --(new run)-> superseded     (allocation orchestrator only)

rejected, executed and superseded are terminal. Every transition is a
compare-and-set on the current status and writes exactly one audit entry in
the same transaction.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from rebalancer.models.allocation import RebalanceSuggestion
from rebalancer.services.audit_log import AuditLog, SUGGESTION_ENTITY
from rebalancer.services.errors import InvalidTransition, RebalancerError, StaleTransition, SuggestionNotFound
from rebalancer.utils.logger import log

ALLOWED_TRANSITIONS = {
    "pending": {"approved", "rejected", "superseded"},
    "approved": {"executed"},
}

DECISIONS = {
    "approve": "approved",
    "reject": "rejected",
}


class ApprovalWorkflow:
    def __init__(self, db: Session, tenant_id: Optional[str] = None):
        self.db = db
        self.tenant_id = tenant_id
        self.audit = AuditLog(db)

    # ─────────────────────────────────────────────
    # READS
    # ─────────────────────────────────────────────

    def get(self, suggestion_id: int) -> RebalanceSuggestion:
        query = self.db.query(RebalanceSuggestion).filter(RebalanceSuggestion.id == suggestion_id)
        if self.tenant_id is not None:
            query = query.filter(RebalanceSuggestion.tenant_id == self.tenant_id)
        suggestion = query.first()
        if suggestion is None:
            raise SuggestionNotFound(suggestion_id)
        return suggestion

    def list_suggestions(
        self,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        run_id: Optional[int] = None,
        transfer_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[RebalanceSuggestion]:
        """Suggestions for the tenant, P1 first, then by estimated gain."""
        query = self.db.query(RebalanceSuggestion)
        if self.tenant_id is not None:
            query = query.filter(RebalanceSuggestion.tenant_id == self.tenant_id)
        if status:
            query = query.filter(RebalanceSuggestion.status == status)
        if priority:
            query = query.filter(RebalanceSuggestion.priority == priority)
        if run_id is not None:
            query = query.filter(RebalanceSuggestion.run_id == run_id)
        if transfer_type:
            query = query.filter(RebalanceSuggestion.transfer_type == transfer_type)

        query = query.order_by(
            RebalanceSuggestion.priority.asc(),
            RebalanceSuggestion.potential_revenue_gain.desc(),
            RebalanceSuggestion.id.asc(),
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    # ─────────────────────────────────────────────
    # TRANSITIONS
    # ─────────────────────────────────────────────

    def decide(
        self,
        suggestion_id: int,
        action: str,
        actor_id: str,
        notes: Optional[str] = None,
        qty_override: Optional[int] = None,
    ) -> RebalanceSuggestion:
        """Approve or reject a pending suggestion, optionally adjusting qty on approval."""
        target = DECISIONS.get(action)
        if target is None:
            raise ValueError(f"Unknown action '{action}', expected one of {sorted(DECISIONS)}")
        if qty_override is not None:
            if target != "approved":
                raise ValueError("qty_override only applies to approvals")
            if int(qty_override) <= 0:
                raise ValueError("qty_override must be a positive quantity")

        suggestion = self.get(suggestion_id)
        self._check_allowed(suggestion, target)

        now = datetime.utcnow()
        changes: Dict[str, Any] = {"decided_by": actor_id, "decided_at": now}
        old_extra: Dict[str, Any] = {}
        new_extra: Dict[str, Any] = {}
        if target == "approved":
            changes.update({"approved_by": actor_id, "approved_at": now})
            new_extra["approved_by"] = actor_id
            if qty_override is not None and int(qty_override) != suggestion.qty:
                changes["qty"] = int(qty_override)
                old_extra["qty"] = suggestion.qty
                new_extra["qty"] = int(qty_override)

        return self._transition(suggestion, target, actor_id, notes, changes, old_extra, new_extra)

    def mark_executed(self, suggestion_id: int, actor_id: str, notes: Optional[str] = None) -> RebalanceSuggestion:
        """Confirm that the physical transfer of an approved suggestion happened."""
        suggestion = self.get(suggestion_id)
        if suggestion.status == "pending":
            raise InvalidTransition(suggestion.id, "pending", "executed", reason="must be approved before execution")
        self._check_allowed(suggestion, "executed")

        now = datetime.utcnow()
        changes = {"executed_by": actor_id, "executed_at": now}
        return self._transition(
            suggestion, "executed", actor_id, notes, changes, {}, {"qty": suggestion.qty}
        )

    def batch_decide(
        self,
        suggestion_ids: Iterable[int],
        action: str,
        actor_id: str,
        notes: Optional[str] = None,
        qty_overrides: Optional[Dict[int, int]] = None,
    ) -> Dict[str, Any]:
        """
        Apply one decision to many suggestions. Each suggestion transitions
        independently; failures are reported per id and never undo the others.
        """
        qty_overrides = qty_overrides or {}
        succeeded: List[int] = []
        failed: List[Dict[str, Any]] = []
        for suggestion_id in suggestion_ids:
            try:
                self.decide(
                    suggestion_id,
                    action,
                    actor_id,
                    notes=notes,
                    qty_override=qty_overrides.get(suggestion_id),
                )
                succeeded.append(suggestion_id)
            except RebalancerError as e:
                failed.append({"id": suggestion_id, **e.to_dict()})
            except ValueError as e:
                failed.append({"id": suggestion_id, "code": "ValidationError", "message": str(e)})

        log.info(f"Batch {action} by {actor_id}: {len(succeeded)} ok, {len(failed)} failed")
        return {"succeeded": succeeded, "failed": failed}

    # ─────────────────────────────────────────────
    # INTERNALS
    # ─────────────────────────────────────────────

    def _check_allowed(self, suggestion: RebalanceSuggestion, target: str) -> None:
        if target not in ALLOWED_TRANSITIONS.get(suggestion.status, set()):
            raise InvalidTransition(suggestion.id, suggestion.status, target)

    def _transition(
        self,
        suggestion: RebalanceSuggestion,
        target: str,
        actor_id: str,
        notes: Optional[str],
        changes: Dict[str, Any],
        old_extra: Dict[str, Any],
        new_extra: Dict[str, Any],
    ) -> RebalanceSuggestion:
        expected = suggestion.status
        updated = (
            self.db.query(RebalanceSuggestion)
            .filter(
                RebalanceSuggestion.id == suggestion.id,
                RebalanceSuggestion.status == expected,
            )
            .update({"status": target, **changes}, synchronize_session=False)
        )
        if updated != 1:
            self.db.rollback()
            raise StaleTransition(suggestion.id, expected, target)

        self.audit.record(
            SUGGESTION_ENTITY,
            suggestion.id,
            target,
            old_values={"status": expected, **old_extra},
            new_values={"status": target, **new_extra},
            performed_by=actor_id,
            notes=notes,
            tenant_id=suggestion.tenant_id,
            performed_at=changes.get("decided_at") or changes.get("executed_at"),
        )
        self.db.commit()
        self.db.refresh(suggestion)

        log.info(f"Suggestion {suggestion.id}: {expected} -> {target} by {actor_id}")
        return suggestion


def suggestion_to_dict(s: RebalanceSuggestion) -> Dict[str, Any]:
    return {
        "id": s.id,
        "run_id": s.run_id,
        "product_id": s.product_id,
        "sku": s.sku,
        "size_code": s.size_code,
        "transfer_type": s.transfer_type,
        "from_location": s.from_location,
        "from_location_name": s.from_location_name,
        "to_location": s.to_location,
        "to_location_name": s.to_location_name,
        "qty": s.qty,
        "original_qty": s.original_qty,
        "priority": s.priority,
        "potential_revenue_gain": s.potential_revenue_gain,
        "revenue_at_risk": s.revenue_at_risk,
        "projected_stockout_date": s.projected_stockout_date.isoformat() if s.projected_stockout_date else None,
        "from_weeks_cover": s.from_weeks_cover,
        "to_weeks_cover": s.to_weeks_cover,
        "logistics_cost_estimate": s.logistics_cost_estimate,
        "net_benefit": s.net_benefit,
        "reason": s.reason,
        "status": s.status,
        "approved_by": s.approved_by,
        "approved_at": s.approved_at.isoformat() if s.approved_at else None,
        "executed_by": s.executed_by,
        "executed_at": s.executed_at.isoformat() if s.executed_at else None,
        "superseded_by_run_id": s.superseded_by_run_id,
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }
