"""
Allocation runs and the transfer suggestions they produce.
"""
from sqlalchemy import Column, Integer, String, Float, Date, DateTime, Text, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from datetime import datetime

from rebalancer.models.base import Base


RUN_TYPES = ("push", "lateral", "both")
RUN_STATUSES = ("created", "completed", "failed")

TRANSFER_TYPES = ("push", "lateral")
PRIORITIES = ("P1", "P2")

SUGGESTION_STATUSES = ("pending", "approved", "rejected", "executed", "superseded")
TERMINAL_STATUSES = frozenset({"rejected", "executed", "superseded"})


class AllocationRun(Base):
    """One batch invocation of the planners; the unit of idempotency"""
    __tablename__ = "allocation_runs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)

    run_type = Column(String, index=True, nullable=False)  # push, lateral, both
    status = Column(String, index=True, nullable=False, default="created")
    failure_reason = Column(String, nullable=True)  # NoEligibleCandidates, PersistenceFailure, PlannerFailure
    failure_detail = Column(Text, nullable=True)
    triggered_by = Column(String, nullable=True)
    snapshot_date = Column(Date, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    # Totals
    total_suggestions = Column(Integer, nullable=False, default=0)
    total_units = Column(Integer, nullable=False, default=0)
    push_suggestions = Column(Integer, nullable=False, default=0)
    push_units = Column(Integer, nullable=False, default=0)
    lateral_suggestions = Column(Integer, nullable=False, default=0)
    lateral_units = Column(Integer, nullable=False, default=0)
    p1_suggestions = Column(Integer, nullable=False, default=0)
    total_revenue_gain = Column(Float, nullable=False, default=0.0)
    stores_analyzed = Column(Integer, nullable=False, default=0)
    skipped_rows = Column(Integer, nullable=False, default=0)

    suggestions = relationship(
        "RebalanceSuggestion",
        back_populates="run",
        foreign_keys="RebalanceSuggestion.run_id",
        order_by="RebalanceSuggestion.id",
    )


class RebalanceSuggestion(Base):
    """A proposed stock transfer awaiting (or past) an operator decision"""
    __tablename__ = "rebalance_suggestions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, index=True, nullable=False)
    run_id = Column(Integer, ForeignKey("allocation_runs.id"), index=True, nullable=False)

    product_id = Column(Integer, index=True, nullable=False)
    sku = Column(String, nullable=False)
    size_code = Column(String, nullable=True)
    transfer_type = Column(String, index=True, nullable=False)  # push, lateral

    from_location = Column(Integer, nullable=False)
    to_location = Column(Integer, nullable=False)
    from_location_name = Column(String, nullable=True)
    to_location_name = Column(String, nullable=True)

    qty = Column(Integer, nullable=False)
    original_qty = Column(Integer, nullable=False)

    # Scoring
    priority = Column(String(2), index=True, nullable=False)
    potential_revenue_gain = Column(Float, nullable=False, default=0.0)
    revenue_at_risk = Column(Float, nullable=False, default=0.0)
    projected_stockout_date = Column(Date, nullable=True)
    from_weeks_cover = Column(Float, nullable=True)
    to_weeks_cover = Column(Float, nullable=True)
    logistics_cost_estimate = Column(Float, nullable=False, default=0.0)
    net_benefit = Column(Float, nullable=False, default=0.0)
    reason = Column(Text, nullable=True)

    # Workflow
    status = Column(String, index=True, nullable=False, default="pending")
    approved_by = Column(String, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    decided_by = Column(String, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    executed_by = Column(String, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    superseded_by_run_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    run = relationship("AllocationRun", back_populates="suggestions", foreign_keys=[run_id])

    __table_args__ = (
        Index('ix_suggestion_tenant_status', 'tenant_id', 'status'),
    )


class RunLock(Base):
    """At most one in-flight run per tenant; the unique tenant_id is the lock"""
    __tablename__ = "allocation_run_locks"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, nullable=False)
    run_token = Column(String, nullable=False)
    acquired_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('tenant_id', name='uq_run_lock_tenant'),
    )
