"""
Priority & impact scoring.

Pure functions; no database.
"""
from datetime import date, timedelta

import pytest

from rebalancer.services.candidates import BELOW_SAFETY_STOCK, LOW_WEEKS_COVER, TransferCandidate
from rebalancer.services.priority_classifier import (
    lead_time_demand,
    projected_stockout_date,
    resolve_unit_price,
    score_candidate,
)

TODAY = date(2026, 10, 1)


def _candidate(qty=15, to_weeks_cover=1.0):
    return TransferCandidate(
        transfer_type="push",
        product_id=10,
        sku="P10-M",
        size_code="M",
        from_location=1,
        to_location=2,
        qty=qty,
        to_on_hand=5,
        to_weeks_cover=to_weeks_cover,
        from_weeks_cover=None,
        urgency=21.4,
        reasons=(BELOW_SAFETY_STOCK, LOW_WEEKS_COVER),
    )


# ────────────────────────────────────────────
# HELPERS
# ────────────────────────────────────────────


class TestHelpers:

    def test_sku_price_preferred(self):
        assert resolve_unit_price(10, "P10-M", {(10, "P10-M"): 30.0}, {10: 25.0}) == 30.0

    def test_falls_back_to_product_price(self):
        assert resolve_unit_price(10, "P10-M", {}, {10: 25.0}) == 25.0

    def test_missing_price_is_zero(self):
        assert resolve_unit_price(10, "P10-M", {}, {}) == 0.0

    def test_stockout_date_from_weeks_of_cover(self):
        assert projected_stockout_date(TODAY, 2.0) == TODAY + timedelta(days=14)

    def test_no_stockout_without_demand(self):
        assert projected_stockout_date(TODAY, 999.0) is None

    @pytest.mark.parametrize("velocity,expected", [(0.7, 5), (1.0, 7), (0.0, 0), (0.01, 1)])
    def test_lead_time_demand_rounds_up(self, velocity, expected):
        assert lead_time_demand(velocity, 7) == expected


# ────────────────────────────────────────────
# SCORING
# ────────────────────────────────────────────


class TestScoreCandidate:

    def test_stockout_inside_lead_time_is_p1(self):
        score = score_candidate(_candidate(), sales_velocity=0.7, unit_price=40.0, today=TODAY)
        assert score.priority == "P1"
        assert score.projected_stockout_date == TODAY + timedelta(days=7)
        assert score.revenue_at_risk == 200.0

    def test_gain_limited_by_lead_time_demand(self):
        """Only units that would sell during the lead time count as gain."""
        score = score_candidate(_candidate(qty=15), sales_velocity=0.7, unit_price=40.0, today=TODAY)
        assert score.potential_revenue_gain == 200.0

    def test_gain_limited_by_qty(self):
        score = score_candidate(_candidate(qty=2), sales_velocity=0.7, unit_price=40.0, today=TODAY)
        assert score.potential_revenue_gain == 80.0

    def test_stockout_after_lead_time_is_p2(self):
        score = score_candidate(_candidate(to_weeks_cover=1.5), sales_velocity=0.7, unit_price=40.0, today=TODAY)
        assert score.priority == "P2"

    def test_materiality_floor_demotes_to_p2(self):
        score = score_candidate(
            _candidate(), sales_velocity=0.7, unit_price=40.0, today=TODAY, materiality_floor=200.0
        )
        assert score.priority == "P2"

    def test_no_demand_is_p2_with_no_gain(self):
        score = score_candidate(_candidate(to_weeks_cover=0.0), sales_velocity=0.0, unit_price=40.0, today=TODAY)
        assert score.priority == "P2"
        assert score.potential_revenue_gain == 0.0
        assert score.revenue_at_risk == 0.0

    def test_missing_price_never_blocks(self):
        score = score_candidate(_candidate(), sales_velocity=0.7, unit_price=0.0, today=TODAY)
        assert score.potential_revenue_gain == 0.0
        assert score.priority == "P2"

    def test_logistics_cost_and_net_benefit(self):
        score = score_candidate(
            _candidate(), sales_velocity=0.7, unit_price=40.0, today=TODAY, logistics_cost_per_unit=0.5
        )
        assert score.logistics_cost_estimate == 7.5
        assert score.net_benefit == 192.5

    def test_reason_describes_need(self):
        score = score_candidate(_candidate(), sales_velocity=0.7, unit_price=40.0, today=TODAY)
        assert "below safety stock" in score.reason
        assert "1.0 wk" in score.reason

    def test_scoring_is_pure(self):
        a = score_candidate(_candidate(), sales_velocity=0.7, unit_price=40.0, today=TODAY)
        b = score_candidate(_candidate(), sales_velocity=0.7, unit_price=40.0, today=TODAY)
        assert a == b
