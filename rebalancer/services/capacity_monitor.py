"""
Capacity Monitor

Classifies every location by utilization = total on-hand / capacity:
  > 0.85  overloaded  (never a push or lateral destination)
  < 0.70  has_space   (preferred lateral destination)
  else    nominal

Locations with capacity 0 have no capacity signal: they are treated as
unconstrained and left out of the has-space ranking. Utilization is computed
from the run's own snapshot every time; nothing is cached across runs.
"""
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

from rebalancer.services.position_store import InventorySnapshot
from rebalancer.utils.logger import log

OVERLOADED = "overloaded"
NOMINAL = "nominal"
HAS_SPACE = "has_space"


@dataclass(frozen=True)
class CapacityStatus:
    store_id: int
    capacity: int
    on_hand_total: int
    utilization: Optional[float]
    classification: str

    @property
    def constrained(self) -> bool:
        return self.capacity > 0

    def to_dict(self) -> dict:
        return {
            "store_id": self.store_id,
            "capacity": self.capacity,
            "on_hand_total": self.on_hand_total,
            "utilization": round(self.utilization, 4) if self.utilization is not None else None,
            "classification": self.classification,
        }


class CapacityMonitor:
    def __init__(self, overload_threshold: float = 0.85, has_space_threshold: float = 0.70):
        self.overload_threshold = overload_threshold
        self.has_space_threshold = has_space_threshold

    def classify(self, capacity: int, on_hand_total: int) -> str:
        if capacity <= 0:
            return NOMINAL
        utilization = on_hand_total / capacity
        if utilization > self.overload_threshold:
            return OVERLOADED
        if utilization < self.has_space_threshold:
            return HAS_SPACE
        return NOMINAL

    def assess(self, snapshot: InventorySnapshot) -> Dict[int, CapacityStatus]:
        """Capacity status for every active location in the snapshot."""
        on_hand = snapshot.on_hand_by_store()
        statuses: Dict[int, CapacityStatus] = {}
        unknown = []
        for store in sorted(snapshot.stores.values(), key=lambda s: s.id):
            total = on_hand.get(store.id, 0)
            if store.capacity <= 0:
                if not store.is_warehouse:
                    unknown.append(store.code)
                utilization = None
            else:
                utilization = total / store.capacity
            statuses[store.id] = CapacityStatus(
                store_id=store.id,
                capacity=store.capacity,
                on_hand_total=total,
                utilization=utilization,
                classification=self.classify(store.capacity, total),
            )

        if unknown:
            log.warning(
                f"{len(unknown)} stores without capacity treated as unconstrained: {', '.join(unknown[:10])}"
            )
        return statuses

    def has_space_ranking(self, statuses: Dict[int, CapacityStatus]) -> List[int]:
        """Stores with spare room, emptiest first. Unknown-capacity stores are excluded."""
        ranked = [
            s for s in statuses.values()
            if s.classification == HAS_SPACE and s.constrained
        ]
        ranked.sort(key=lambda s: (s.utilization, s.store_id))
        return [s.store_id for s in ranked]


class CapacityLedger:
    """
    Remaining room per destination within one run.

    Headroom is measured to the overload threshold, and every unit planned
    into a store (push or lateral, any SKU) is deducted from it.
    """

    def __init__(self, statuses: Dict[int, CapacityStatus], overload_threshold: float = 0.85):
        self._limits: Dict[int, Optional[int]] = {}
        for store_id, status in statuses.items():
            if not status.constrained:
                self._limits[store_id] = None
            else:
                ceiling = math.floor(status.capacity * overload_threshold + 1e-9)
                self._limits[store_id] = max(ceiling - status.on_hand_total, 0)

    def headroom(self, store_id: int) -> Optional[int]:
        """Units that still fit, or None when the store is unconstrained."""
        return self._limits.get(store_id)

    def cap(self, store_id: int, qty: int) -> int:
        room = self.headroom(store_id)
        return qty if room is None else min(qty, room)

    def take(self, store_id: int, qty: int) -> None:
        room = self._limits.get(store_id)
        if room is None:
            return
        if qty > room:
            raise ValueError(f"Store {store_id} has only {room} units of headroom, cannot take {qty}")
        self._limits[store_id] = room - qty

    def reserve(self, store_id: int, qty: int) -> None:
        """Deduct units committed before this run; headroom bottoms out at zero."""
        room = self._limits.get(store_id)
        if room is None:
            return
        self._limits[store_id] = max(room - qty, 0)
