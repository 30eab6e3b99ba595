"""
Unit tests for the spread template registry and readiness checks.
"""

import pytest

from app.services.financial_facts import VisibleFacts
from app.services.spread_templates import (
    ALL_SPREAD_TYPES,
    ReadinessPrereq,
    evaluate_prereq,
    get_spread_template,
    is_valid_spread_type,
    resolve_owner_type,
)


class TestRegistry:
    """Tests for the template registry."""

    @pytest.mark.unit
    def test_known_types(self):
        assert "T12" in ALL_SPREAD_TYPES
        assert "RENT_ROLL" in ALL_SPREAD_TYPES
        assert is_valid_spread_type("GLOBAL_CASH_FLOW")
        assert not is_valid_spread_type("CASH_BURN")
        assert get_spread_template("CASH_BURN") is None

    @pytest.mark.unit
    def test_versions(self):
        assert get_spread_template("T12").version == 3
        assert get_spread_template("RENT_ROLL").version == 3
        assert get_spread_template("BALANCE_SHEET").version == 1


class TestEvaluatePrereq:
    """Tests for evaluate_prereq."""

    @pytest.mark.unit
    def test_any_fact_type_satisfies(self):
        """T12 is ready with tax returns alone."""
        facts = VisibleFacts(by_fact_type={"TAX_RETURN": 4}, fact_keys={"REVENUE"})
        result = evaluate_prereq(get_spread_template("T12").prereq, facts)
        assert result.ready
        assert result.missing == []

    @pytest.mark.unit
    def test_no_fact_type_lists_all(self):
        """When none of the accepted types is visible, every one is reported."""
        result = evaluate_prereq(get_spread_template("T12").prereq, VisibleFacts())
        assert not result.ready
        assert result.missing == ["fact_type:INCOME_STATEMENT", "fact_type:TAX_RETURN"]

    @pytest.mark.unit
    def test_rent_roll_needs_rows(self):
        prereq = get_spread_template("RENT_ROLL").prereq
        assert evaluate_prereq(prereq, VisibleFacts()).missing == ["table:rent_roll_rows"]
        assert evaluate_prereq(prereq, VisibleFacts(), rent_roll_row_count=3).ready

    @pytest.mark.unit
    def test_fact_keys_and_min_count(self):
        prereq = ReadinessPrereq(fact_keys=("NOI", "REVENUE"), min_fact_count=2)
        facts = VisibleFacts(fact_keys={"REVENUE"})
        result = evaluate_prereq(prereq, facts)
        assert result.missing == ["fact_key:NOI", "min_facts:2"]


class TestResolveOwnerType:
    """Tests for resolve_owner_type."""

    @pytest.mark.unit
    @pytest.mark.parametrize("spread_type,owner_type,expected", [
        ("PERSONAL_INCOME", None, "PERSONAL"),
        ("PERSONAL_FINANCIAL_STATEMENT", "DEAL", "PERSONAL"),
        ("GLOBAL_CASH_FLOW", None, "GLOBAL"),
        ("T12", None, "DEAL"),
        ("T12", "GUARANTOR", "GUARANTOR"),
    ])
    def test_owner_type(self, spread_type, owner_type, expected):
        assert resolve_owner_type(spread_type, owner_type) == expected
