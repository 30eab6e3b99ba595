"""
Risk-Based Pricing Quote

Indicative rate built from the policy tier and the stress outcome:

    final_rate = index + product spread + tier premium + stress adjustment

Spreads and premiums are basis points; bank overlays may override any of
them through overlay.pricing.
"""

from dataclasses import dataclass, field
from typing import Optional

from app.services.policy_engine import TIER_ORDER, BankOverlayConfig


DEFAULT_INDEX_RATE_PCT = 8.50  # Prime

PRODUCT_SPREADS_BPS = {
    "SBA": 275,
    "CRE": 225,
    "LOC": 150,
    "EQUIPMENT": 200,
    "ACQUISITION": 300,
}

TIER_PREMIUMS_BPS = {
    "A": 0,
    "B": 50,
    "C": 125,
    "D": 300,
}

STRESS_ADJUST_BPS_PER_TIER = 25


@dataclass
class RiskPricingResult:
    product: str
    tier: str
    stressed_tier: str
    index_rate_pct: float
    product_spread_bps: int
    base_rate: float  # index + product spread, percent
    risk_premium_bps: int
    stress_adjustment_bps: int
    final_rate: float  # percent
    rationale: list[str] = field(default_factory=list)


def compute_risk_pricing(
    product: str,
    tier: str,
    stressed_tier: Optional[str] = None,
    index_rate_pct: Optional[float] = None,
    overlay: Optional[BankOverlayConfig] = None,
) -> RiskPricingResult:
    """Deterministic rate quote for a tier and its worst stressed tier."""
    pricing = (overlay or BankOverlayConfig()).pricing
    stressed_tier = stressed_tier or tier
    index_rate = DEFAULT_INDEX_RATE_PCT if index_rate_pct is None else index_rate_pct

    spread_bps = pricing.spreads.get(product, PRODUCT_SPREADS_BPS.get(product, 250))
    premium_bps = pricing.tier_premiums.get(tier, TIER_PREMIUMS_BPS[tier])
    per_tier = (
        STRESS_ADJUST_BPS_PER_TIER
        if pricing.stress_adjust_bps_per_tier is None
        else pricing.stress_adjust_bps_per_tier
    )
    degradation = max(0, TIER_ORDER.index(stressed_tier) - TIER_ORDER.index(tier))
    stress_bps = degradation * per_tier

    base_rate = round(index_rate + spread_bps / 100, 4)
    final_rate = round(base_rate + (premium_bps + stress_bps) / 100, 4)

    rationale = [
        f"Index rate {index_rate:.2f}% plus {product} spread of {spread_bps} bps gives base rate {base_rate:.2f}%",
        f"Tier {tier} risk premium: {premium_bps} bps",
    ]
    if degradation:
        rationale.append(
            f"Stress degrades tier {tier} to {stressed_tier} ({degradation} tier(s)): +{stress_bps} bps"
        )
    else:
        rationale.append("No tier degradation under stress: no stress adjustment")
    rationale.append(f"Final indicative rate: {final_rate:.2f}%")

    return RiskPricingResult(
        product=product,
        tier=tier,
        stressed_tier=stressed_tier,
        index_rate_pct=index_rate,
        product_spread_bps=spread_bps,
        base_rate=base_rate,
        risk_premium_bps=premium_bps,
        stress_adjustment_bps=stress_bps,
        final_rate=final_rate,
        rationale=rationale,
    )
