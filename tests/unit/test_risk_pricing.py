"""
Unit tests for risk-based pricing.
"""

import pytest

from app.services.policy_engine import BankOverlayConfig
from app.services.risk_pricing import DEFAULT_INDEX_RATE_PCT, compute_risk_pricing


class TestComputeRiskPricing:
    """Tests for compute_risk_pricing."""

    @pytest.mark.unit
    def test_tier_a_no_stress(self):
        """Tier A SBA: prime + 275 bps, no premium."""
        result = compute_risk_pricing("SBA", "A", "A")
        assert result.index_rate_pct == DEFAULT_INDEX_RATE_PCT
        assert result.base_rate == pytest.approx(11.25)
        assert result.risk_premium_bps == 0
        assert result.stress_adjustment_bps == 0
        assert result.final_rate == pytest.approx(11.25)

    @pytest.mark.unit
    def test_degraded_tier_adds_stress_adjustment(self):
        """SBA B degrading to C: 8.50 + 2.75 + 0.50 + 0.25 = 12.00."""
        result = compute_risk_pricing("SBA", "B", "C", index_rate_pct=8.5)
        assert result.risk_premium_bps == 50
        assert result.stress_adjustment_bps == 25
        assert result.final_rate == pytest.approx(12.0)
        assert any("degrades tier B to C" in line for line in result.rationale)
        assert result.rationale[-1] == "Final indicative rate: 12.00%"

    @pytest.mark.unit
    def test_two_tier_degradation(self):
        """Each degraded tier adds 25 bps."""
        result = compute_risk_pricing("CRE", "A", "C", index_rate_pct=8.0)
        assert result.stress_adjustment_bps == 50
        assert result.final_rate == pytest.approx(8.0 + 2.25 + 0.5)

    @pytest.mark.unit
    def test_stressed_tier_defaults_to_tier(self):
        result = compute_risk_pricing("LOC", "D")
        assert result.stressed_tier == "D"
        assert result.final_rate == pytest.approx(8.5 + 1.5 + 3.0)

    @pytest.mark.unit
    def test_overlay_overrides(self):
        """Overlay pricing replaces spreads, premiums and the per-tier adjustment."""
        overlay = BankOverlayConfig.model_validate({
            "pricing": {
                "spreads": {"SBA": 300},
                "tier_premiums": {"B": 75},
                "stress_adjust_bps_per_tier": 40,
            }
        })
        result = compute_risk_pricing("SBA", "B", "C", index_rate_pct=8.0, overlay=overlay)
        assert result.product_spread_bps == 300
        assert result.risk_premium_bps == 75
        assert result.stress_adjustment_bps == 40
        assert result.final_rate == pytest.approx(8.0 + 3.0 + 0.75 + 0.40)
