"""
Priority & Impact Classifier

Pure scoring of transfer candidates; no database access and no hidden state,
so re-scoring an unchanged candidate always gives the same answer.

  projected_stockout_date = today + weeks_of_cover * 7 days   (destination)
  revenue_at_risk         = ceil(velocity * lead_time_days) * unit_price
  priority                = P1 if stockout falls inside the lead-time window
                            and revenue_at_risk > materiality_floor, else P2
  potential_revenue_gain  = min(qty, ceil(velocity * lead_time_days)) * unit_price

Unit price: realized SKU price, else product average, else 0. A missing
price zeroes the estimated gain but never blocks a suggestion.
"""
import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Optional, Tuple

from rebalancer.services.candidates import (
    BELOW_SAFETY_STOCK,
    LOW_WEEKS_COVER,
    SIZE_BREAK,
    STOCKOUT,
    SURPLUS_SOURCE,
    TransferCandidate,
)

# Beyond this the stockout date is meaningless (no demand)
MAX_PROJECTION_WEEKS = 520

REASON_TEXT = {
    STOCKOUT: "destination out of stock",
    BELOW_SAFETY_STOCK: "destination below safety stock",
    LOW_WEEKS_COVER: "weeks of cover below push threshold",
    SIZE_BREAK: "fills a broken size run",
    SURPLUS_SOURCE: "source holds surplus cover",
}


@dataclass(frozen=True)
class Score:
    priority: str
    potential_revenue_gain: float
    revenue_at_risk: float
    projected_stockout_date: Optional[date]
    unit_price: float
    logistics_cost_estimate: float
    net_benefit: float
    reason: str


def resolve_unit_price(
    product_id: int,
    sku: str,
    sku_prices: Dict[Tuple[int, str], float],
    product_prices: Dict[int, float],
) -> float:
    price = sku_prices.get((product_id, sku))
    if price is None:
        price = product_prices.get(product_id)
    return float(price) if price is not None and price > 0 else 0.0


def projected_stockout_date(today: date, weeks_of_cover: float) -> Optional[date]:
    if weeks_of_cover is None or weeks_of_cover >= MAX_PROJECTION_WEEKS:
        return None
    return today + timedelta(days=max(weeks_of_cover, 0.0) * 7)


def lead_time_demand(sales_velocity: float, lead_time_days: int) -> int:
    """Units expected to sell during the lead time, rounded up."""
    if sales_velocity <= 0:
        return 0
    return math.ceil(sales_velocity * lead_time_days - 1e-9)


def describe(reasons: Tuple[str, ...], weeks_of_cover: float) -> str:
    parts = [REASON_TEXT.get(tag, tag) for tag in reasons]
    parts.append(f"destination cover {weeks_of_cover:.1f} wk" if weeks_of_cover < MAX_PROJECTION_WEEKS else "destination cover unbounded")
    return "; ".join(parts)


def score_candidate(
    candidate: TransferCandidate,
    sales_velocity: float,
    unit_price: float,
    today: date,
    lead_time_days: int = 7,
    materiality_floor: float = 0.0,
    logistics_cost_per_unit: float = 0.0,
) -> Score:
    """Score one candidate. `sales_velocity` is the destination's velocity."""
    stockout = projected_stockout_date(today, candidate.to_weeks_cover)
    lt_units = lead_time_demand(sales_velocity, lead_time_days)

    revenue_at_risk = round(lt_units * unit_price, 2)
    gain = round(min(candidate.qty, lt_units) * unit_price, 2)

    within_window = stockout is not None and stockout <= today + timedelta(days=lead_time_days)
    priority = "P1" if within_window and revenue_at_risk > materiality_floor else "P2"

    cost = round(candidate.qty * logistics_cost_per_unit, 2)
    return Score(
        priority=priority,
        potential_revenue_gain=gain,
        revenue_at_risk=revenue_at_risk,
        projected_stockout_date=stockout,
        unit_price=unit_price,
        logistics_cost_estimate=cost,
        net_benefit=round(gain - cost, 2),
        reason=describe(candidate.reasons, candidate.to_weeks_cover),
    )
