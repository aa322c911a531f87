"""
Transfer candidates shared by the push and lateral planners, and the
destination ranking both of them use.
"""
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

# (product_id, sku, store_id) -> units already headed into that store
InboundPlan = Dict[Tuple[int, str, int], int]
# (product_id, sku, from_location) -> units already promised out of that location
OutboundPlan = Dict[Tuple[int, str, int], int]

STOCKOUT = "stockout"
BELOW_SAFETY_STOCK = "below_safety_stock"
LOW_WEEKS_COVER = "low_weeks_cover"
SIZE_BREAK = "size_break"
SURPLUS_SOURCE = "surplus_source"


@dataclass(frozen=True)
class TransferCandidate:
    transfer_type: str  # push, lateral
    product_id: int
    sku: str
    size_code: str
    from_location: int
    to_location: int
    qty: int
    to_on_hand: int
    to_weeks_cover: float
    from_weeks_cover: Optional[float]
    urgency: float
    reasons: Tuple[str, ...] = ()

    def sort_key(self) -> tuple:
        return (
            self.transfer_type,
            self.product_id,
            self.sku,
            self.to_location,
            self.from_location,
        )


def urgency(deficit: int, sales_velocity: float, epsilon: float = 0.01) -> float:
    """Deficit to safety stock over daily velocity; higher ranks first."""
    return deficit / max(sales_velocity, epsilon)


def destination_rank(urgency_score: float, tier_rank: int, store_id: int, prefers_space: bool = False) -> tuple:
    """Sort key: urgency descending, then has-space stores, then tier A>B>C, then id."""
    return (-urgency_score, 0 if prefers_space else 1, tier_rank, store_id)


def need_reasons(on_hand: int, safety_stock: int, short_on_cover: bool) -> Tuple[str, ...]:
    reasons = []
    if on_hand <= 0:
        reasons.append(STOCKOUT)
    elif on_hand < safety_stock:
        reasons.append(BELOW_SAFETY_STOCK)
    if short_on_cover:
        reasons.append(LOW_WEEKS_COVER)
    return tuple(reasons)
