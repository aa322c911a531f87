"""
Lateral Planner

Moves stock between stores for the same (product, sku).

Sources hold more than `surplus_threshold_weeks` of cover and are not
accelerating. Destinations are below the push threshold, or are missing the
size entirely (a broken size run suppresses sell-through even when the
product's overall cover looks fine). For each destination, in push-urgency
order, sources are drained by descending surplus:
    qty = min(source_surplus, destination_deficit, source_stock_above_safety)
"""
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from rebalancer.services.candidates import (
    InboundPlan,
    OutboundPlan,
    SIZE_BREAK,
    SURPLUS_SOURCE,
    TransferCandidate,
    destination_rank,
    need_reasons,
    urgency,
)
from rebalancer.services.capacity_monitor import CapacityLedger, CapacityStatus, HAS_SPACE, OVERLOADED
from rebalancer.services.position_store import InventorySnapshot, PositionView
from rebalancer.services.size_integrity import SizeIntegrityResult
from rebalancer.utils.logger import log


@dataclass
class _Source:
    store_id: int
    tier: str
    weeks_of_cover: float
    surplus: int
    remaining: int  # units above the source's own safety stock


@dataclass(frozen=True)
class _Destination:
    store_id: int
    tier: str
    tier_rank: int
    on_hand: int
    weeks_of_cover: float
    deficit: int
    urgency: float
    prefers_space: bool
    reasons: Tuple[str, ...]


class LateralPlanner:
    def __init__(
        self,
        push_threshold_weeks: float = 2.0,
        surplus_threshold_weeks: float = 8.0,
        velocity_epsilon: float = 0.01,
        size_fill_units: int = 1,
        same_tier_only: bool = True,
    ):
        self.push_threshold_weeks = push_threshold_weeks
        self.surplus_threshold_weeks = surplus_threshold_weeks
        self.velocity_epsilon = velocity_epsilon
        self.size_fill_units = size_fill_units
        self.same_tier_only = same_tier_only

    def source_surplus(self, position: PositionView, sales_velocity: float) -> int:
        """Units above what `surplus_threshold_weeks` of demand needs."""
        if sales_velocity <= 0:
            return position.available - position.safety_stock
        keep = math.ceil(sales_velocity * 7 * self.surplus_threshold_weeks - 1e-9)
        return position.available - keep

    def plan(
        self,
        snapshot: InventorySnapshot,
        statuses: Dict[int, CapacityStatus],
        size_results: Dict[Tuple[int, int], SizeIntegrityResult],
        ledger: CapacityLedger,
        inbound: Optional[InboundPlan] = None,
        committed_out: Optional[OutboundPlan] = None,
    ) -> List[TransferCandidate]:
        inbound = inbound if inbound is not None else {}
        committed_out = committed_out or {}
        grouped = snapshot.positions_by_sku()

        # (product, size) -> stores missing that size
        missing_by_size: Dict[Tuple[int, str], Set[int]] = {}
        for result in size_results.values():
            for size in result.missing_sizes:
                missing_by_size.setdefault((result.product_id, size), set()).add(result.store_id)

        keys = set(grouped)
        for product_id, size in missing_by_size:
            sku = snapshot.sku_for_size(product_id, size)
            if sku is not None:
                keys.add((product_id, sku))

        candidates: List[TransferCandidate] = []
        for product_id, sku in sorted(keys):
            candidates.extend(
                self._plan_sku(
                    snapshot, statuses, ledger, inbound, committed_out,
                    product_id, sku, grouped.get((product_id, sku), []),
                    missing_by_size,
                )
            )

        log.info(
            f"Lateral planner: {len(candidates)} candidates, "
            f"{sum(c.qty for c in candidates)} units for tenant {snapshot.tenant_id}"
        )
        return candidates

    def _eligible(self, snapshot: InventorySnapshot, statuses: Dict[int, CapacityStatus], store_id: int) -> bool:
        store = snapshot.store(store_id)
        if store is None or store.is_warehouse:
            return False
        status = statuses.get(store_id)
        return status is None or status.classification != OVERLOADED

    def _plan_sku(
        self,
        snapshot: InventorySnapshot,
        statuses: Dict[int, CapacityStatus],
        ledger: CapacityLedger,
        inbound: InboundPlan,
        committed_out: OutboundPlan,
        product_id: int,
        sku: str,
        positions: List[PositionView],
        missing_by_size: Dict[Tuple[int, str], Set[int]],
    ) -> List[TransferCandidate]:
        size_code = snapshot.sku_sizes.get((product_id, sku), sku)
        missing_here = missing_by_size.get((product_id, size_code), set())
        eligible = [p for p in positions if self._eligible(snapshot, statuses, p.store_id)]

        destinations: List[_Destination] = []
        for p in eligible:
            short = p.weeks_of_cover < self.push_threshold_weeks and p.safety_deficit > 0
            broken = p.store_id in missing_here and p.on_hand <= 0
            if not (short or broken):
                continue
            deficit = p.safety_deficit
            reasons = need_reasons(p.on_hand, p.safety_stock, short)
            if broken:
                deficit = max(deficit, self.size_fill_units)
                reasons = reasons + (SIZE_BREAK,)
            destinations.append(self._destination(snapshot, statuses, product_id, p.store_id, p.on_hand, p.weeks_of_cover, deficit, reasons))

        # Broken sizes with no position row at all
        with_rows = {p.store_id for p in positions}
        for store_id in sorted(missing_here - with_rows):
            if not self._eligible(snapshot, statuses, store_id):
                continue
            destinations.append(self._destination(
                snapshot, statuses, product_id, store_id, 0, 0.0,
                self.size_fill_units, need_reasons(0, 0, False) + (SIZE_BREAK,),
            ))
        if not destinations:
            return []

        destination_ids = {d.store_id for d in destinations}
        sources: List[_Source] = []
        for p in eligible:
            if p.store_id in destination_ids:
                continue  # never source and destination for the same sku
            if p.weeks_of_cover <= self.surplus_threshold_weeks:
                continue
            if snapshot.trend(product_id, p.store_id) == "accelerating":
                continue
            promised = committed_out.get((product_id, sku, p.store_id), 0)
            surplus = self.source_surplus(p, snapshot.velocity(product_id, p.store_id)) - promised
            remaining = p.available - p.safety_stock - promised
            if surplus <= 0 or remaining <= 0:
                continue
            sources.append(_Source(
                store_id=p.store_id,
                tier=snapshot.stores[p.store_id].tier,
                weeks_of_cover=p.weeks_of_cover,
                surplus=surplus,
                remaining=remaining,
            ))
        if not sources:
            return []

        destinations.sort(key=lambda d: destination_rank(d.urgency, d.tier_rank, d.store_id, d.prefers_space))

        planned: List[TransferCandidate] = []
        for dest in destinations:
            key = (product_id, sku, dest.store_id)
            need = dest.deficit - inbound.get(key, 0)
            if need <= 0:
                continue
            for src in sorted(sources, key=lambda s: (-s.surplus, s.store_id)):
                if need <= 0:
                    break
                if src.store_id == dest.store_id:
                    continue
                if self.same_tier_only and src.tier != dest.tier:
                    continue
                qty = ledger.cap(dest.store_id, min(src.surplus, need, src.remaining))
                if qty <= 0:
                    continue

                ledger.take(dest.store_id, qty)
                inbound[key] = inbound.get(key, 0) + qty
                src.surplus -= qty
                src.remaining -= qty
                need -= qty
                planned.append(
                    TransferCandidate(
                        transfer_type="lateral",
                        product_id=product_id,
                        sku=sku,
                        size_code=size_code,
                        from_location=src.store_id,
                        to_location=dest.store_id,
                        qty=qty,
                        to_on_hand=dest.on_hand,
                        to_weeks_cover=dest.weeks_of_cover,
                        from_weeks_cover=src.weeks_of_cover,
                        urgency=dest.urgency,
                        reasons=dest.reasons + (SURPLUS_SOURCE,),
                    )
                )
        return planned

    def _destination(
        self,
        snapshot: InventorySnapshot,
        statuses: Dict[int, CapacityStatus],
        product_id: int,
        store_id: int,
        on_hand: int,
        weeks_cover: float,
        deficit: int,
        reasons: Tuple[str, ...],
    ) -> _Destination:
        store = snapshot.stores[store_id]
        status = statuses.get(store_id)
        return _Destination(
            store_id=store_id,
            tier=store.tier,
            tier_rank=store.tier_rank,
            on_hand=on_hand,
            weeks_of_cover=weeks_cover,
            deficit=deficit,
            urgency=urgency(deficit, snapshot.velocity(product_id, store_id), self.velocity_epsilon),
            prefers_space=bool(status and status.constrained and status.classification == HAS_SPACE),
            reasons=reasons,
        )
