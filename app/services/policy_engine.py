"""
Policy Engine

Evaluates a CreditSnapshot against product thresholds layered with the
bank's overlay and assigns a risk tier:

    no breaches            -> A
    only minor breaches    -> B
    any moderate breach    -> C
    any severe breach      -> D

Severity comes from the relative deviation |actual - threshold| / threshold
compared to the overlay's breach bands (settings provide the defaults).
A threshold that cannot be evaluated (no bound, non-finite or non-positive
bound) is a severe breach: policy fails closed, never silently passes.
"""

import math
from dataclasses import dataclass, field
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.core.config import get_settings
from app.services.credit_metrics import CreditSnapshot


TIER_ORDER = ("A", "B", "C", "D")
PASSING_TIERS = ("A", "B")


# =============================================================================
# POLICY DEFINITIONS
# =============================================================================


@dataclass(frozen=True)
class PolicyThreshold:
    metric: str
    minimum: Optional[float] = None
    maximum: Optional[float] = None


@dataclass(frozen=True)
class PolicyDefinition:
    product: str
    thresholds: tuple[PolicyThreshold, ...]


DEFAULT_POLICIES: dict[str, PolicyDefinition] = {
    "SBA": PolicyDefinition("SBA", (
        PolicyThreshold("dscr", minimum=1.25),
        PolicyThreshold("leverage", maximum=4.0),
    )),
    "LOC": PolicyDefinition("LOC", (
        PolicyThreshold("current_ratio", minimum=1.0),
    )),
    "EQUIPMENT": PolicyDefinition("EQUIPMENT", (
        PolicyThreshold("dscr", minimum=1.20),
        PolicyThreshold("leverage", maximum=4.5),
    )),
    "ACQUISITION": PolicyDefinition("ACQUISITION", (
        PolicyThreshold("leverage", maximum=5.0),
        PolicyThreshold("dscr", minimum=1.20),
    )),
    "CRE": PolicyDefinition("CRE", (
        PolicyThreshold("dscr", minimum=1.25),
        PolicyThreshold("leverage", maximum=6.0),
    )),
}


# =============================================================================
# BANK OVERLAY
# =============================================================================


class OverlayThreshold(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metric: str
    product: Optional[str] = None  # None applies to every product
    minimum: Optional[float] = None
    maximum: Optional[float] = None


class OverlayPolicy(BaseModel):
    model_config = ConfigDict(extra="ignore")

    thresholds: list[OverlayThreshold] = Field(default_factory=list)
    minor_breach_band: Optional[float] = None
    severe_breach_band: Optional[float] = None


class OverlayPricing(BaseModel):
    model_config = ConfigDict(extra="ignore")

    spreads: dict[str, int] = Field(default_factory=dict)  # product -> bps over index
    tier_premiums: dict[str, int] = Field(default_factory=dict)  # tier -> bps
    stress_adjust_bps_per_tier: Optional[int] = None


class BankOverlayConfig(BaseModel):
    """
    Bank credit-policy overlay parsed from bank_overlays.overlay_json.

    An empty blob means system defaults everywhere.
    """
    model_config = ConfigDict(extra="ignore")

    min_dscr: Optional[float] = None
    max_ltv: Optional[float] = None
    base_spread_bps: Optional[int] = None
    policy: OverlayPolicy = Field(default_factory=OverlayPolicy)
    pricing: OverlayPricing = Field(default_factory=OverlayPricing)

    def breach_bands(self) -> tuple[float, float]:
        settings = get_settings()
        minor = self.policy.minor_breach_band
        severe = self.policy.severe_breach_band
        return (
            settings.minor_breach_band if minor is None else minor,
            settings.severe_breach_band if severe is None else severe,
        )


def get_policy_definition(product: str, overlay: Optional[BankOverlayConfig] = None) -> PolicyDefinition:
    """Product defaults with overlay thresholds applied per (product, metric)."""
    if product not in DEFAULT_POLICIES:
        raise ValueError(f"Unknown product: {product}")

    by_metric = {t.metric: t for t in DEFAULT_POLICIES[product].thresholds}

    if overlay is not None:
        for t in overlay.policy.thresholds:
            if t.product is not None and t.product != product:
                continue
            by_metric[t.metric] = PolicyThreshold(t.metric, minimum=t.minimum, maximum=t.maximum)

        dscr = by_metric.get("dscr")
        if overlay.min_dscr is not None and dscr is not None and dscr.minimum is not None:
            by_metric["dscr"] = PolicyThreshold(
                "dscr", minimum=max(dscr.minimum, overlay.min_dscr), maximum=dscr.maximum
            )

    return PolicyDefinition(product, tuple(by_metric.values()))


# =============================================================================
# EVALUATION
# =============================================================================


@dataclass
class PolicyBreach:
    metric: str
    threshold: dict[str, Optional[float]]  # {"minimum": x} and/or {"maximum": y}
    actual_value: Optional[float]
    severity: str  # minor, moderate, severe
    deviation: float
    malformed_threshold: bool = False


@dataclass
class PolicyResult:
    product: str
    passed: bool
    failed_metrics: list[str]
    breaches: list[PolicyBreach]
    warnings: list[str]
    tier: str
    metrics_evaluated: dict[str, Optional[float]] = field(default_factory=dict)


def _valid_bound(bound: Optional[float]) -> bool:
    return bound is not None and math.isfinite(bound) and bound > 0


def classify_severity(deviation: float, minor_band: float, severe_band: float) -> str:
    if deviation <= minor_band:
        return "minor"
    if deviation <= severe_band:
        return "moderate"
    return "severe"


def assign_tier(breaches: Iterable[PolicyBreach]) -> str:
    severities = {b.severity for b in breaches}
    if "severe" in severities:
        return "D"
    if "moderate" in severities:
        return "C"
    if "minor" in severities:
        return "B"
    return "A"


def compare_tiers(a: str, b: str) -> int:
    """-1 if a is better than b, 0 if equal, 1 if worse."""
    ia, ib = TIER_ORDER.index(a), TIER_ORDER.index(b)
    return (ia > ib) - (ia < ib)


def worst_tier(tiers: Iterable[str]) -> str:
    return max(tiers, key=TIER_ORDER.index)


def _check_threshold(
    threshold: PolicyThreshold,
    value: float,
    minor_band: float,
    severe_band: float,
) -> Optional[PolicyBreach]:
    if threshold.minimum is not None and value < threshold.minimum:
        bound, key = threshold.minimum, "minimum"
    elif threshold.maximum is not None and value > threshold.maximum:
        bound, key = threshold.maximum, "maximum"
    else:
        return None

    deviation = abs(value - bound) / bound
    return PolicyBreach(
        metric=threshold.metric,
        threshold={key: bound},
        actual_value=value,
        severity=classify_severity(deviation, minor_band, severe_band),
        deviation=deviation,
    )


def evaluate_policy(
    snapshot: CreditSnapshot,
    product: str,
    overlay: Optional[BankOverlayConfig] = None,
) -> PolicyResult:
    """Evaluate a snapshot against the product policy. Pure."""
    overlay = overlay or BankOverlayConfig()
    minor_band, severe_band = overlay.breach_bands()
    definition = get_policy_definition(product, overlay)

    breaches: list[PolicyBreach] = []
    warnings: list[str] = []
    evaluated: dict[str, Optional[float]] = {}

    for threshold in definition.thresholds:
        value = snapshot.metric(threshold.metric)
        evaluated[threshold.metric] = value

        bounds = [b for b in (threshold.minimum, threshold.maximum) if b is not None]
        if not bounds or not all(_valid_bound(b) for b in bounds):
            breaches.append(PolicyBreach(
                metric=threshold.metric,
                threshold={"minimum": threshold.minimum, "maximum": threshold.maximum},
                actual_value=value,
                severity="severe",
                deviation=1.0,
                malformed_threshold=True,
            ))
            warnings.append(f"{threshold.metric}: malformed threshold, treated as severe breach")
            continue

        if value is None:
            warnings.append(f"{threshold.metric}: value unavailable, threshold not evaluated")
            continue

        breach = _check_threshold(threshold, value, minor_band, severe_band)
        if breach is not None:
            breaches.append(breach)

    tier = assign_tier(breaches)

    return PolicyResult(
        product=product,
        passed=tier in PASSING_TIERS,
        failed_metrics=[b.metric for b in breaches],
        breaches=breaches,
        warnings=warnings,
        tier=tier,
        metrics_evaluated=evaluated,
    )
