"""
Stress Engine

Runs the fixed stress-scenario registry against a financial model:

    BASELINE            no shock
    EBITDA_10_DOWN      EBITDA x 0.90
    REVENUE_10_DOWN     revenue x 0.90
    RATE_PLUS_200       +200 bps on every instrument
    COMBINED_MODERATE   EBITDA x 0.90 and +200 bps

Each scenario rebuilds the credit snapshot from the shocked inputs and
re-runs the policy engine. Transforms never mutate their inputs.
"""

from dataclasses import dataclass, field, replace
from typing import Optional

from app.services.credit_metrics import CreditSnapshot, FinancialModel, compute_credit_snapshot
from app.services.debt_service import DebtInstrument
from app.services.policy_engine import (
    BankOverlayConfig,
    PolicyResult,
    compare_tiers,
    evaluate_policy,
    worst_tier,
)


@dataclass(frozen=True)
class StressScenarioDefinition:
    key: str
    label: str
    ebitda_haircut: Optional[float] = None
    revenue_haircut: Optional[float] = None
    rate_shock_bps: Optional[int] = None


STRESS_SCENARIOS: tuple[StressScenarioDefinition, ...] = (
    StressScenarioDefinition("BASELINE", "Baseline"),
    StressScenarioDefinition("EBITDA_10_DOWN", "EBITDA -10%", ebitda_haircut=0.10),
    StressScenarioDefinition("REVENUE_10_DOWN", "Revenue -10%", revenue_haircut=0.10),
    StressScenarioDefinition("RATE_PLUS_200", "Rates +200 bps", rate_shock_bps=200),
    StressScenarioDefinition(
        "COMBINED_MODERATE",
        "EBITDA -10% and rates +200 bps",
        ebitda_haircut=0.10,
        rate_shock_bps=200,
    ),
)


def get_scenario_definition(key: str) -> StressScenarioDefinition:
    for scenario in STRESS_SCENARIOS:
        if scenario.key == key:
            return scenario
    raise KeyError(f"Unknown stress scenario: {key}")


@dataclass
class StressScenarioResult:
    key: str
    label: str
    snapshot: CreditSnapshot
    policy: PolicyResult
    dscr_delta: Optional[float] = None
    debt_service_delta: Optional[float] = None


@dataclass
class StressResult:
    baseline: StressScenarioResult
    scenarios: list[StressScenarioResult] = field(default_factory=list)
    worst_tier: str = "A"
    tier_degraded: bool = False


# =============================================================================
# TRANSFORMS
# =============================================================================


def _haircut_group(model: FinancialModel, group: str, key: str, haircut: float) -> FinancialModel:
    periods = []
    for period in model.periods:
        values = getattr(period, group)
        if values.get(key) is None:
            periods.append(period)
            continue
        periods.append(replace(period, **{group: {**values, key: values[key] * (1 - haircut)}}))
    return replace(model, periods=tuple(periods))


def apply_ebitda_haircut(model: FinancialModel, haircut: float) -> FinancialModel:
    return _haircut_group(model, "cashflow", "ebitda", haircut)


def apply_revenue_haircut(model: FinancialModel, haircut: float) -> FinancialModel:
    return _haircut_group(model, "income", "revenue", haircut)


def apply_rate_shock(
    instruments: Optional[list[DebtInstrument]], shock_bps: int
) -> Optional[list[DebtInstrument]]:
    """Add shock_bps to every instrument rate. None when there is nothing to shock."""
    if not instruments:
        return None
    return [replace(i, rate=i.rate + shock_bps / 10_000) for i in instruments]


# =============================================================================
# RUNNER
# =============================================================================


def run_scenario(
    scenario: StressScenarioDefinition,
    model: FinancialModel,
    instruments: Optional[list[DebtInstrument]],
    product: str,
    overlay: Optional[BankOverlayConfig] = None,
    baseline: Optional[StressScenarioResult] = None,
    strategy: str = "LATEST_AVAILABLE",
    period_id: Optional[str] = None,
) -> Optional[StressScenarioResult]:
    """Shock, rebuild the snapshot and evaluate policy. None if no snapshot can be built."""
    stressed_model = model
    if scenario.ebitda_haircut is not None:
        stressed_model = apply_ebitda_haircut(stressed_model, scenario.ebitda_haircut)
    if scenario.revenue_haircut is not None:
        stressed_model = apply_revenue_haircut(stressed_model, scenario.revenue_haircut)

    stressed_instruments = instruments
    if scenario.rate_shock_bps is not None:
        # No instruments to shock: debt service stays on the interest proxy
        stressed_instruments = apply_rate_shock(instruments, scenario.rate_shock_bps)

    snapshot = compute_credit_snapshot(
        stressed_model, strategy=strategy, period_id=period_id, instruments=stressed_instruments
    )
    if snapshot is None:
        return None

    policy = evaluate_policy(snapshot, product, overlay)

    dscr_delta = None
    debt_service_delta = None
    if baseline is not None:
        base_dscr = baseline.snapshot.metric("dscr")
        dscr = snapshot.metric("dscr")
        if base_dscr is not None and dscr is not None:
            dscr_delta = dscr - base_dscr

        base_ds = baseline.snapshot.debt_service.total_debt_service
        ds = snapshot.debt_service.total_debt_service
        if base_ds is not None and ds is not None:
            debt_service_delta = ds - base_ds

    return StressScenarioResult(
        key=scenario.key,
        label=scenario.label,
        snapshot=snapshot,
        policy=policy,
        dscr_delta=dscr_delta,
        debt_service_delta=debt_service_delta,
    )


def run_stress_scenarios(
    model: FinancialModel,
    instruments: Optional[list[DebtInstrument]],
    product: str,
    overlay: Optional[BankOverlayConfig] = None,
    strategy: str = "LATEST_AVAILABLE",
    period_id: Optional[str] = None,
) -> Optional[StressResult]:
    """
    Run every registered scenario.

    Returns None when the baseline snapshot cannot be built; callers treat
    that as "cannot stress-test".
    """
    baseline = run_scenario(
        STRESS_SCENARIOS[0], model, instruments, product, overlay,
        strategy=strategy, period_id=period_id,
    )
    if baseline is None:
        return None

    scenarios = [baseline]
    for definition in STRESS_SCENARIOS[1:]:
        result = run_scenario(
            definition, model, instruments, product, overlay,
            baseline=baseline, strategy=strategy, period_id=period_id,
        )
        if result is not None:
            scenarios.append(result)

    base_tier = baseline.policy.tier
    return StressResult(
        baseline=baseline,
        scenarios=scenarios,
        worst_tier=worst_tier(s.policy.tier for s in scenarios),
        tier_degraded=any(compare_tiers(s.policy.tier, base_tier) > 0 for s in scenarios),
    )
