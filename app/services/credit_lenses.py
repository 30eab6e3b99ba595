"""
Credit Lenses

Product-specific reading of a CreditSnapshot. Each lens names the metrics
that matter for the product, then sorts them into strengths, weaknesses and
risk signals using fixed reference levels. No policy decision is made here;
the policy engine owns pass/fail.
"""

from dataclasses import dataclass, field
from typing import Optional

from app.services.credit_metrics import CreditSnapshot


PRODUCTS = ("SBA", "LOC", "EQUIPMENT", "ACQUISITION", "CRE")


@dataclass(frozen=True)
class LensRule:
    metric: str
    label: str
    strong_at: float
    weak_at: float
    higher_is_better: bool = True


LENS_RULES: dict[str, tuple[LensRule, ...]] = {
    "SBA": (
        LensRule("dscr", "Debt service coverage", strong_at=1.5, weak_at=1.25),
        LensRule("leverage", "Debt / EBITDA", strong_at=3.0, weak_at=4.0, higher_is_better=False),
        LensRule("net_margin", "Net margin", strong_at=0.10, weak_at=0.03),
    ),
    "LOC": (
        LensRule("current_ratio", "Current ratio", strong_at=1.5, weak_at=1.0),
        LensRule("quick_ratio", "Quick ratio", strong_at=1.0, weak_at=0.5),
        LensRule("working_capital", "Working capital", strong_at=1.0, weak_at=0.0),
    ),
    "EQUIPMENT": (
        LensRule("dscr", "Debt service coverage", strong_at=1.5, weak_at=1.2),
        LensRule("leverage", "Debt / EBITDA", strong_at=3.5, weak_at=4.5, higher_is_better=False),
        LensRule("ebitda_margin", "EBITDA margin", strong_at=0.20, weak_at=0.08),
    ),
    "ACQUISITION": (
        LensRule("dscr", "Debt service coverage", strong_at=1.5, weak_at=1.2),
        LensRule("leverage", "Debt / EBITDA", strong_at=3.5, weak_at=5.0, higher_is_better=False),
        LensRule("ebitda_margin", "EBITDA margin", strong_at=0.15, weak_at=0.05),
    ),
    "CRE": (
        LensRule("dscr", "Debt service coverage", strong_at=1.4, weak_at=1.25),
        LensRule("leverage", "Debt / EBITDA", strong_at=5.0, weak_at=7.0, higher_is_better=False),
    ),
}


@dataclass
class ProductAnalysis:
    product: str
    key_metrics: dict[str, Optional[float]]
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    risk_signals: list[str] = field(default_factory=list)
    data_gaps: list[str] = field(default_factory=list)
    diagnostics: dict[str, list[str]] = field(default_factory=dict)


def _fmt(metric: str, value: float) -> str:
    if metric.endswith("_margin"):
        return f"{value * 100:.1f}%"
    if metric == "working_capital":
        return f"${value:,.0f}"
    return f"{value:.2f}x"


def compute_product_analysis(snapshot: CreditSnapshot, product: str) -> ProductAnalysis:
    """Apply the product lens to a snapshot."""
    if product not in LENS_RULES:
        raise ValueError(f"Unknown product: {product}")

    analysis = ProductAnalysis(product=product, key_metrics={})

    for rule in LENS_RULES[product]:
        result = snapshot.ratios.get(rule.metric)
        value = result.value if result else None
        analysis.key_metrics[rule.metric] = value

        if value is None:
            analysis.data_gaps.append(f"{rule.label} unavailable")
            if result is not None:
                reasons = list(result.missing_inputs)
                if result.divide_by_zero:
                    reasons.append("divide_by_zero")
                analysis.diagnostics[rule.metric] = reasons
            continue

        shown = _fmt(rule.metric, value)
        if rule.higher_is_better:
            strong = value >= rule.strong_at
            weak = value < rule.weak_at
        else:
            strong = value <= rule.strong_at
            weak = value > rule.weak_at

        if strong:
            analysis.strengths.append(f"{rule.label} of {shown} is strong for {product}")
        elif weak:
            analysis.weaknesses.append(f"{rule.label} of {shown} is weak for {product}")
        else:
            analysis.risk_signals.append(f"{rule.label} of {shown} is adequate but thin")

    if snapshot.debt_service.total_debt_service is None:
        analysis.risk_signals.append("Debt service could not be determined")
    if snapshot.period.type not in ("FYE", "TTM"):
        analysis.risk_signals.append(f"Analysis relies on {snapshot.period.type} period")

    return analysis
