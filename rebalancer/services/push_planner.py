"""
Push Planner

Allocates warehouse-held units to understocked stores.

For each (product, sku) with warehouse supply, eligible stores (not
overloaded, weeks of cover below the push threshold) are ranked by urgency
and filled greedily with
    qty = min(warehouse_remaining, deficit_to_safety_stock, capacity_headroom)
until the warehouse runs dry or no destination is left.
"""
from typing import Dict, List, Optional

from rebalancer.services.candidates import (
    InboundPlan,
    OutboundPlan,
    TransferCandidate,
    destination_rank,
    need_reasons,
    urgency,
)
from rebalancer.services.capacity_monitor import CapacityLedger, CapacityStatus, OVERLOADED
from rebalancer.services.position_store import InventorySnapshot, PositionView
from rebalancer.utils.logger import log


class PushPlanner:
    def __init__(self, push_threshold_weeks: float = 2.0, velocity_epsilon: float = 0.01):
        self.push_threshold_weeks = push_threshold_weeks
        self.velocity_epsilon = velocity_epsilon

    def is_destination(self, snapshot: InventorySnapshot, statuses: Dict[int, CapacityStatus], position: PositionView) -> bool:
        store = snapshot.store(position.store_id)
        if store is None or store.is_warehouse:
            return False
        status = statuses.get(position.store_id)
        if status is not None and status.classification == OVERLOADED:
            return False
        return position.weeks_of_cover < self.push_threshold_weeks

    def plan(
        self,
        snapshot: InventorySnapshot,
        statuses: Dict[int, CapacityStatus],
        ledger: CapacityLedger,
        inbound: Optional[InboundPlan] = None,
        committed_out: Optional[OutboundPlan] = None,
    ) -> List[TransferCandidate]:
        """
        `inbound` and `committed_out` carry transfers that are already open
        (approved, or pending from another run type); they reduce destination
        deficits and warehouse supply respectively.
        """
        inbound = inbound if inbound is not None else {}
        committed_out = committed_out or {}
        warehouse_ids = {w.id for w in snapshot.warehouses()}
        if not warehouse_ids:
            log.info(f"No central warehouse for tenant {snapshot.tenant_id}; push planning skipped")
            return []

        candidates: List[TransferCandidate] = []
        for (product_id, sku), positions in snapshot.positions_by_sku().items():
            supply = []
            for p in positions:
                if p.store_id not in warehouse_ids:
                    continue
                free = p.available - committed_out.get((product_id, sku, p.store_id), 0)
                if free > 0:
                    supply.append((p.store_id, free, p.weeks_of_cover))
            if not supply:
                continue

            destinations = [p for p in positions if self.is_destination(snapshot, statuses, p)]
            if not destinations:
                continue
            destinations.sort(key=lambda p: destination_rank(
                urgency(p.safety_deficit, snapshot.velocity(product_id, p.store_id), self.velocity_epsilon),
                snapshot.stores[p.store_id].tier_rank,
                p.store_id,
            ))

            for warehouse_id, remaining, warehouse_cover in supply:
                for dest in destinations:
                    if remaining <= 0:
                        break
                    key = (product_id, sku, dest.store_id)
                    deficit = dest.safety_deficit - inbound.get(key, 0)
                    qty = ledger.cap(dest.store_id, min(remaining, deficit))
                    if qty <= 0:
                        continue

                    ledger.take(dest.store_id, qty)
                    inbound[key] = inbound.get(key, 0) + qty
                    remaining -= qty
                    candidates.append(
                        TransferCandidate(
                            transfer_type="push",
                            product_id=product_id,
                            sku=sku,
                            size_code=dest.size_code,
                            from_location=warehouse_id,
                            to_location=dest.store_id,
                            qty=qty,
                            to_on_hand=dest.on_hand,
                            to_weeks_cover=dest.weeks_of_cover,
                            from_weeks_cover=warehouse_cover,
                            urgency=urgency(
                                dest.safety_deficit,
                                snapshot.velocity(product_id, dest.store_id),
                                self.velocity_epsilon,
                            ),
                            reasons=need_reasons(dest.on_hand, dest.safety_stock, True),
                        )
                    )

        log.info(
            f"Push planner: {len(candidates)} candidates, "
            f"{sum(c.qty for c in candidates)} units for tenant {snapshot.tenant_id}"
        )
        return candidates
