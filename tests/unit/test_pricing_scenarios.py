"""
Unit tests for the pure pricing scenario builder.

Covers the BASE / CONSERVATIVE / STRETCH / SBA_7A set, rate resolution,
gating rules, SBA fees and policy overlay notes.
"""

import pytest

from app.services.deal_inputs import LoanRequestInput
from app.services.index_rates import IndexRateQuote
from app.services.policy_engine import BankOverlayConfig
from app.services.pricing_scenarios import build_pricing_scenarios, resolve_base_rate
from app.services.sba_eligibility import evaluate_sba_eligibility


def build(snapshot, rates, loan=None, overlay=None):
    loan = loan or LoanRequestInput(loan_amount=1_000_000, borrower_entity_type="LLC")
    sba = evaluate_sba_eligibility(
        snapshot,
        loan_amount=loan.loan_amount,
        use_of_proceeds=loan.use_of_proceeds,
        borrower_entity_type=loan.borrower_entity_type,
        loan_product_type=loan.product_type,
    )
    scenarios = build_pricing_scenarios(snapshot, loan, rates, overlay or BankOverlayConfig(), sba)
    return {s.scenario_key: s for s in scenarios}


class TestResolveBaseRate:
    """Requested index, then SOFR, then the configured fallback."""

    @pytest.mark.unit
    def test_requested_index(self, sofr_rates):
        assert resolve_base_rate("PRIME", sofr_rates) == 8.5

    @pytest.mark.unit
    def test_falls_back_to_sofr(self, sofr_rates):
        assert resolve_base_rate("UST_5Y", sofr_rates) == 5.0

    @pytest.mark.unit
    def test_falls_back_to_configured_rate(self):
        assert resolve_base_rate("SOFR", {}) == 5.0


class TestBuildPricingScenarios:
    """Tests for build_pricing_scenarios."""

    @pytest.mark.unit
    def test_full_scenario_set(self, pricing_snapshot, sofr_rates):
        """A strong conventional deal gets all four scenarios in order."""
        scenarios = build(pricing_snapshot, sofr_rates)
        assert list(scenarios) == ["BASE", "CONSERVATIVE", "STRETCH", "SBA_7A"]

    @pytest.mark.unit
    def test_base_structure(self, pricing_snapshot, sofr_rates):
        """SOFR 5.00% + 250 bps = 7.50% all-in."""
        base = build(pricing_snapshot, sofr_rates)["BASE"]
        assert base.structure.base_rate_pct == 5.0
        assert base.structure.spread_bps == 250
        assert base.structure.all_in_rate_pct == pytest.approx(7.5)
        assert base.structure.amort_months == 300
        assert base.structure.fees == {"origination_pct": 1.0}
        assert base.structure.prepayment == {"type": "Step-down", "penalty_pct": 3}
        assert base.metrics.dscr == pytest.approx(300_000 / base.metrics.annual_debt_service)
        assert base.metrics.ltv_pct == pytest.approx(0.8)
        assert base.metrics.debt_yield_pct == pytest.approx(0.28)
        assert base.metrics.monthly_io is None
        assert base.policy_overlays == []

    @pytest.mark.unit
    def test_stressed_dscr_is_lower(self, pricing_snapshot, sofr_rates):
        metrics = build(pricing_snapshot, sofr_rates)["BASE"].metrics
        assert metrics.dscr_stressed_300bps < metrics.dscr

    @pytest.mark.unit
    def test_conservative_and_stretch(self, pricing_snapshot, sofr_rates):
        scenarios = build(pricing_snapshot, sofr_rates)
        conservative = scenarios["CONSERVATIVE"].structure
        stretch = scenarios["STRETCH"].structure
        assert conservative.spread_bps == 300
        assert conservative.amort_months == 240
        assert stretch.spread_bps == 200
        assert stretch.all_in_rate_pct == pytest.approx(7.0)

    @pytest.mark.unit
    def test_stretch_floor(self, pricing_snapshot, sofr_rates):
        """STRETCH never prices below 100 bps."""
        overlay = BankOverlayConfig(base_spread_bps=120)
        stretch = build(pricing_snapshot, sofr_rates, overlay=overlay)["STRETCH"]
        assert stretch.structure.spread_bps == 100

    @pytest.mark.unit
    def test_no_stretch_below_min_dscr(self, pricing_snapshot, sofr_rates):
        """Snapshot DSCR under the bank minimum drops STRETCH."""
        scenarios = build({**pricing_snapshot, "dscr": 1.1}, sofr_rates)
        assert "STRETCH" not in scenarios
        assert "BASE" in scenarios

    @pytest.mark.unit
    def test_no_stretch_without_noi(self, pricing_snapshot, sofr_rates):
        snapshot = {k: v for k, v in pricing_snapshot.items() if k != "noi_ttm"}
        assert "STRETCH" not in build(snapshot, sofr_rates)

    @pytest.mark.unit
    def test_overlay_min_dscr_gates_stretch(self, pricing_snapshot, sofr_rates):
        overlay = BankOverlayConfig(min_dscr=1.6)
        assert "STRETCH" not in build(pricing_snapshot, sofr_rates, overlay=overlay)

    @pytest.mark.unit
    def test_sba_alternative_structure(self, pricing_snapshot, sofr_rates):
        """SBA_7A: 275 bps, 300 month amortization, 120 month term, SBA fees."""
        sba = build(pricing_snapshot, sofr_rates)["SBA_7A"]
        assert sba.product_type == "SBA_7A"
        assert sba.structure.spread_bps == 275
        assert sba.structure.amort_months == 300
        assert sba.structure.term_months == 120
        assert sba.structure.fees == {"origination_pct": 0.5, "sba_guaranty_fee_pct": 0.25}
        assert sba.structure.prepayment["type"] == "SBA Standard"
        assert [o.section for o in sba.policy_overlays] == ["7(a) General", "7(a) Fees"]
        assert sba.policy_overlays[0].impact == "Status: eligible"

    @pytest.mark.unit
    def test_large_sba_guaranty_fee(self, pricing_snapshot, sofr_rates):
        loan = LoanRequestInput(loan_amount=2_000_000)
        sba = build({**pricing_snapshot, "collateral_gross_value": 3_000_000}, sofr_rates, loan)["SBA_7A"]
        assert sba.structure.fees["sba_guaranty_fee_pct"] == 3.5
        assert "3.50% (loans > $1M)" in sba.policy_overlays[1].impact

    @pytest.mark.unit
    def test_ineligible_has_no_sba_alternative(self, pricing_snapshot, sofr_rates):
        """Over the program maximum: no SBA_7A scenario."""
        loan = LoanRequestInput(loan_amount=6_000_000)
        assert "SBA_7A" not in build(pricing_snapshot, sofr_rates, loan)

    @pytest.mark.unit
    def test_sba_request_gets_no_alternative(self, pricing_snapshot, sofr_rates):
        """An SBA request is priced as SBA throughout with no extra SBA_7A."""
        loan = LoanRequestInput(loan_amount=1_000_000, product_type="SBA_7A")
        scenarios = build(pricing_snapshot, sofr_rates, loan)
        assert "SBA_7A" not in scenarios
        assert scenarios["BASE"].structure.fees["origination_pct"] == 0.5

    @pytest.mark.unit
    def test_policy_overlay_notes(self, pricing_snapshot, sofr_rates):
        """Thin coverage and high LTV each add a bank policy note."""
        snapshot = {**pricing_snapshot, "cash_flow_available": 50_000.0, "collateral_gross_value": 1_000_000.0}
        base = build(snapshot, sofr_rates)["BASE"]
        rules = [o.rule for o in base.policy_overlays]
        assert rules == ["Min DSCR 1.25x", "Max LTV 80%"]
        assert base.policy_overlays[1].impact == "Actual LTV 100.0% exceeds policy limit"

    @pytest.mark.unit
    def test_interest_only_payment(self, pricing_snapshot, sofr_rates):
        loan = LoanRequestInput(loan_amount=1_200_000, interest_only_months=12)
        base = build(pricing_snapshot, sofr_rates, loan)["BASE"]
        assert base.metrics.monthly_io == pytest.approx(1_200_000 * 0.075 / 12)

    @pytest.mark.unit
    def test_fallback_rate_without_quotes(self, pricing_snapshot):
        """No stored quotes: priced off the configured fallback."""
        base = build(pricing_snapshot, {})["BASE"]
        assert base.structure.base_rate_pct == 5.0

    @pytest.mark.unit
    def test_value_num_snapshot_entries(self, sofr_rates):
        """Snapshot metrics stored as {"value_num": n} are read the same way."""
        snapshot = {
            "dscr": {"value_num": 1.5},
            "cash_flow_available": {"value_num": 300_000},
            "noi_ttm": {"value_num": 280_000},
        }
        scenarios = build(snapshot, sofr_rates)
        assert "STRETCH" in scenarios
        assert scenarios["BASE"].metrics.ltv_pct is None
