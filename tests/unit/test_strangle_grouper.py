"""Unit tests for pairing broker legs into strangles."""

from datetime import date

import pytest

from strangler.services.broker import PositionItem
from strangler.services.strangle_grouper import (
    OrphanedStrangle,
    group_legs_by_expiration,
    identify_strangles,
)


class TestGroupLegsByExpiration:
    """Tests for group_legs_by_expiration."""

    def test_groups_by_expiration(self, leg_factory):
        legs = [
            leg_factory("C", 610, -2),
            leg_factory("P", 560, -2),
            leg_factory("C", 620, -1, expiration=date(2024, 4, 19)),
        ]
        groups = group_legs_by_expiration(legs)
        assert set(groups) == {"2024-03-15", "2024-04-19"}
        assert len(groups["2024-03-15"]) == 2

    def test_filters_underlying(self, leg_factory):
        legs = [leg_factory("C", 610, -2), leg_factory("C", 450, -1, underlying="QQQ")]
        groups = group_legs_by_expiration(legs, "SPY")
        assert [leg.symbol for leg in groups["2024-03-15"]] == ["SPY240315C00610000"]

    def test_no_filter_keeps_everything(self, leg_factory):
        legs = [leg_factory("C", 610, -2), leg_factory("C", 450, -1, underlying="QQQ")]
        groups = group_legs_by_expiration(legs, None)
        assert len(groups["2024-03-15"]) == 2

    def test_drops_equity_legs(self):
        groups = group_legs_by_expiration([PositionItem("SPY", 100)], None)
        assert groups == {}


class TestIdentifyStrangles:
    """Tests for identify_strangles."""

    def test_single_strangle(self, leg_factory):
        legs = [
            leg_factory("C", 610, -2, cost_basis=-300.0),
            leg_factory("P", 560, -2, cost_basis=-400.0),
        ]
        strangles = identify_strangles(legs, "2024-03-15")

        assert strangles == [
            OrphanedStrangle(
                symbol="SPY",
                put_strike=560.0,
                call_strike=610.0,
                expiration="2024-03-15",
                quantity=2,
                put_cost_basis=-400.0,
                call_cost_basis=-300.0,
            )
        ]
        assert strangles[0].credit == pytest.approx(700.0)

    def test_unequal_quantities_pair_the_minimum(self, leg_factory):
        legs = [leg_factory("C", 610, -3), leg_factory("P", 560, -1)]
        strangles = identify_strangles(legs, "2024-03-15")
        assert len(strangles) == 1
        assert strangles[0].quantity == 1

    def test_calls_only(self, leg_factory):
        assert identify_strangles([leg_factory("C", 610, -2)], "2024-03-15") == []

    def test_greedy_pairing_order(self, leg_factory):
        legs = [
            leg_factory("C", 620, -1),
            leg_factory("C", 610, -1),
            leg_factory("P", 550, -1),
            leg_factory("P", 560, -1),
        ]
        pairs = [(s.call_strike, s.put_strike) for s in identify_strangles(legs, "2024-03-15")]
        assert pairs == [(610.0, 550.0), (620.0, 560.0)]

    def test_one_call_spans_several_puts(self, leg_factory):
        legs = [
            leg_factory("C", 610, -3, cost_basis=-450.0),
            leg_factory("P", 550, -1, cost_basis=-100.0),
            leg_factory("P", 560, -2, cost_basis=-300.0),
        ]
        strangles = identify_strangles(legs, "2024-03-15")

        assert [(s.put_strike, s.quantity) for s in strangles] == [(550.0, 1), (560.0, 2)]
        # Call basis is split by contract count
        assert strangles[0].call_cost_basis == pytest.approx(-150.0)
        assert strangles[1].call_cost_basis == pytest.approx(-300.0)

    def test_aggregates_duplicate_strikes(self, leg_factory):
        legs = [
            leg_factory("C", 610, -1, cost_basis=-150.0),
            leg_factory("C", 610, -1, cost_basis=-170.0),
            leg_factory("P", 560, -2, cost_basis=-400.0),
        ]
        strangles = identify_strangles(legs, "2024-03-15")
        assert len(strangles) == 1
        assert strangles[0].quantity == 2
        assert strangles[0].call_cost_basis == pytest.approx(-320.0)

    def test_skips_invalid_and_zero_legs(self, leg_factory):
        legs = [
            PositionItem("SPY", 100),
            leg_factory("C", 610, 0),
            leg_factory("C", 615, -1),
            leg_factory("P", 560, -1),
        ]
        strangles = identify_strangles(legs, "2024-03-15")
        assert [(s.call_strike, s.put_strike) for s in strangles] == [(615.0, 560.0)]

    def test_long_legs_counted_by_magnitude(self, leg_factory):
        legs = [leg_factory("C", 610, 2), leg_factory("P", 560, 2)]
        assert identify_strangles(legs, "2024-03-15")[0].quantity == 2
