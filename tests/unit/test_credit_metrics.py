"""
Unit tests for the snapshot builder.

Tests period selection, debt service sourcing and ratio diagnostics.
"""

import pytest

from app.services.credit_metrics import (
    FinancialModel,
    compute_credit_snapshot,
    compute_debt_service_for_period,
    select_analysis_period,
)
from app.services.debt_service import DebtInstrument
from conftest import make_period


@pytest.fixture
def multi_period_model():
    return FinancialModel(
        deal_id="d1",
        periods=(
            make_period(ebitda=900_000, period_end="2023-12-31"),
            make_period(ebitda=1_000_000, period_end="2024-12-31"),
            make_period(ebitda=1_100_000, period_end="2025-06-30", period_type="TTM"),
        ),
    )


class TestSelectAnalysisPeriod:
    """Tests for select_analysis_period."""

    @pytest.mark.unit
    def test_latest_available(self, multi_period_model):
        """Most recent period end wins regardless of type."""
        period = select_analysis_period(multi_period_model)
        assert period.period_id == "ttm-2025-06-30"
        assert period.candidates[0] == "ttm-2025-06-30"
        assert len(period.candidates) == 3

    @pytest.mark.unit
    def test_latest_fy(self, multi_period_model):
        """LATEST_FY skips TTM periods."""
        assert select_analysis_period(multi_period_model, "LATEST_FY").period_id == "fye-2024-12-31"

    @pytest.mark.unit
    def test_explicit(self, multi_period_model):
        """EXPLICIT picks the requested period or nothing."""
        assert select_analysis_period(multi_period_model, "EXPLICIT", "fye-2023-12-31").period_end == "2023-12-31"
        assert select_analysis_period(multi_period_model, "EXPLICIT", "fye-1999-12-31") is None

    @pytest.mark.unit
    def test_empty_model(self):
        """No periods means no selection."""
        assert select_analysis_period(FinancialModel(deal_id="d")) is None

    @pytest.mark.unit
    def test_unknown_strategy(self, multi_period_model):
        """Unknown strategy is a caller error."""
        with pytest.raises(ValueError):
            select_analysis_period(multi_period_model, "NEWEST")


class TestDebtService:
    """Tests for compute_debt_service_for_period."""

    @pytest.mark.unit
    def test_interest_proxy(self, healthy_model):
        """Without instruments, income.interest stands in for debt service."""
        result = compute_debt_service_for_period(healthy_model, "fye-2024-12-31")
        assert result.source == "income.interest"
        assert result.total_debt_service == 400_000

    @pytest.mark.unit
    def test_missing_interest(self):
        """No interest and no instruments: debt service is absent, not zero."""
        model = FinancialModel(deal_id="d", periods=(make_period(ebitda=1, interest=None),))
        result = compute_debt_service_for_period(model, "fye-2024-12-31")
        assert result.total_debt_service is None
        assert result.missing_components == ["income.interest"]

    @pytest.mark.unit
    def test_debt_engine(self, healthy_model):
        """Instruments switch the source to the debt engine."""
        instruments = [DebtInstrument(id="t", principal=120_000, rate=0.0, amortization_months=120)]
        result = compute_debt_service_for_period(healthy_model, "fye-2024-12-31", instruments)
        assert result.source == "debt_engine"
        assert result.total_debt_service == pytest.approx(12_000)


class TestCreditSnapshot:
    """Tests for compute_credit_snapshot ratios."""

    @pytest.mark.unit
    def test_core_ratios(self, healthy_model):
        """Ratios follow their formulas."""
        snapshot = compute_credit_snapshot(healthy_model)
        assert snapshot.metric("dscr") == pytest.approx(2.5)
        assert snapshot.metric("leverage") == pytest.approx(2.0)
        assert snapshot.metric("current_ratio") == pytest.approx(1.8)
        assert snapshot.metric("quick_ratio") == pytest.approx(1.4)
        assert snapshot.metric("ebitda_margin") == pytest.approx(0.2)
        assert snapshot.metric("net_margin") == pytest.approx(0.08)
        assert snapshot.metric("working_capital") == pytest.approx(400_000)
        assert snapshot.ratios["dscr"].formula == "EBITDA / TotalDebtService"

    @pytest.mark.unit
    def test_missing_inputs_recorded(self):
        """A missing input yields None and names the input."""
        model = FinancialModel(deal_id="d", periods=(make_period(ebitda=None),))
        snapshot = compute_credit_snapshot(model)
        assert snapshot.metric("dscr") is None
        assert snapshot.ratios["dscr"].missing_inputs == ["ebitda"]

    @pytest.mark.unit
    def test_divide_by_zero_flagged(self):
        """Zero short-term debt flags divide_by_zero on liquidity ratios."""
        model = FinancialModel(deal_id="d", periods=(make_period(ebitda=500_000, short_term_debt=0),))
        snapshot = compute_credit_snapshot(model)
        assert snapshot.metric("current_ratio") is None
        assert snapshot.ratios["current_ratio"].divide_by_zero

    @pytest.mark.unit
    def test_no_period_returns_none(self):
        """No usable period is an explicit absent result."""
        assert compute_credit_snapshot(FinancialModel(deal_id="d")) is None

    @pytest.mark.unit
    def test_to_dict_is_plain_data(self, healthy_model):
        """Snapshots serialize to nested dicts."""
        data = compute_credit_snapshot(healthy_model).to_dict()
        assert data["period"]["period_id"] == "fye-2024-12-31"
        assert data["ratios"]["dscr"]["value"] == pytest.approx(2.5)
