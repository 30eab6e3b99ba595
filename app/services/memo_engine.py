"""
Memo Engine

Composes the structured credit memo from the pipeline outputs. Eight
template-built sections, no I/O and no generated text: the same MemoInput
always produces byte-identical sections. The only timestamp is the
top-level generated_at.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

from app.services.credit_lenses import ProductAnalysis
from app.services.credit_metrics import CreditSnapshot
from app.services.policy_engine import PolicyResult
from app.services.risk_pricing import RiskPricingResult
from app.services.stress_engine import StressResult


SECTION_KEYS = (
    "executive_summary",
    "transaction_overview",
    "financial_analysis",
    "policy_assessment",
    "stress_analysis",
    "pricing_summary",
    "risks_and_mitigants",
    "recommendation",
)

RECOMMENDATIONS = {
    "A": "APPROVE",
    "B": "APPROVE",
    "C": "APPROVE_WITH_MITIGANTS",
    "D": "DECLINE_OR_RESTRUCTURE",
}

RECOMMENDATION_TEXT = {
    "APPROVE": "The credit meets policy requirements and is recommended for approval.",
    "APPROVE_WITH_MITIGANTS": (
        "The credit is recommended for approval subject to the conditions and mitigants below."
    ),
    "DECLINE_OR_RESTRUCTURE": (
        "The credit does not meet policy requirements. Decline or restructure is recommended."
    ),
}


@dataclass
class MemoInput:
    deal_id: str
    product: str
    snapshot: CreditSnapshot
    analysis: ProductAnalysis
    policy: PolicyResult
    stress: StressResult
    pricing: RiskPricingResult


@dataclass
class MemoSection:
    key: str
    title: str
    content: str
    bullets: list[str] = field(default_factory=list)


@dataclass
class CreditMemo:
    deal_id: str
    product: str
    recommendation: str
    sections: dict[str, MemoSection]
    generated_at: str

    def to_dict(self) -> dict:
        return asdict(self)


def get_recommendation(tier: str) -> str:
    return RECOMMENDATIONS[tier]


# =============================================================================
# FORMATTING
# =============================================================================


def _pct(value: float) -> str:
    return f"{value * 100:.2f}%"


def _num(value: Optional[float], fallback: str = "N/A") -> str:
    if value is None:
        return fallback
    return f"{value:,.2f}"


def _currency(value: Optional[float], fallback: str = "N/A") -> str:
    if value is None:
        return fallback
    return f"${value:,.0f}"


# =============================================================================
# SECTIONS
# =============================================================================


def build_executive_summary(data: MemoInput) -> MemoSection:
    rec = get_recommendation(data.policy.tier)
    degraded = " (degraded from baseline)" if data.stress.tier_degraded else " (no degradation)"
    content = " ".join([
        f"This credit memo presents the underwriting analysis for a {data.product} facility.",
        f"The borrower has been assigned risk tier {data.policy.tier} based on policy evaluation.",
        f"Recommendation: {RECOMMENDATION_TEXT[rec]}",
        f"Proposed all-in rate: {data.pricing.final_rate:.2f}%.",
        f"Under stress testing, the worst-case tier is {data.stress.worst_tier}{degraded}.",
    ])
    return MemoSection("executive_summary", "Executive Summary", content)


def build_transaction_overview(data: MemoInput) -> MemoSection:
    period = data.snapshot.period
    content = " ".join([
        f"Deal ID: {data.deal_id}.",
        f"Product type: {data.product}.",
        f"Analysis period: {period.type} ending {period.period_end}.",
        f"Debt service source: {data.snapshot.debt_service.source}.",
    ])
    bullets = [
        f"Period selection: {period.reason}",
        f"Candidate periods evaluated: {len(period.candidates)}",
    ]
    return MemoSection("transaction_overview", "Transaction Overview", content, bullets)


def build_financial_analysis(data: MemoInput) -> MemoSection:
    ratios = data.snapshot.ratios
    lines = []
    labels = (
        ("dscr", "DSCR", lambda v: f"{_num(v)}x"),
        ("leverage", "Leverage (Debt/EBITDA)", lambda v: f"{_num(v)}x"),
        ("current_ratio", "Current Ratio", _num),
        ("quick_ratio", "Quick Ratio", _num),
        ("working_capital", "Working Capital", _currency),
        ("ebitda_margin", "EBITDA Margin", _pct),
        ("net_margin", "Net Margin", _pct),
    )
    for key, label, render in labels:
        metric = ratios.get(key)
        if metric is not None and metric.value is not None:
            lines.append(f"{label}: {render(metric.value)}")

    content = (
        f"Key financial metrics for the {data.analysis.product} analysis:\n" + "\n".join(lines)
        if lines
        else "No financial metrics available for analysis."
    )

    bullets = []
    if data.analysis.strengths:
        bullets.append(f"Strengths: {'; '.join(data.analysis.strengths)}")
    if data.analysis.weaknesses:
        bullets.append(f"Weaknesses: {'; '.join(data.analysis.weaknesses)}")

    return MemoSection("financial_analysis", "Financial Analysis", content, bullets)


def build_policy_assessment(data: MemoInput) -> MemoSection:
    policy = data.policy
    if not policy.breaches:
        status = "All policy thresholds met."
    else:
        status = (
            f"{len(policy.failed_metrics)} metric(s) outside policy: "
            f"{', '.join(policy.failed_metrics)}."
        )

    lines = []
    for b in policy.breaches:
        if b.malformed_threshold:
            lines.append(f"{b.metric}: threshold malformed, treated as {b.severity} breach")
            continue
        if "minimum" in b.threshold:
            direction, bound = "below minimum", b.threshold["minimum"]
        else:
            direction, bound = "above maximum", b.threshold["maximum"]
        lines.append(
            f"{b.metric}: {_num(b.actual_value)} ({direction} {_num(bound)}, "
            f"{b.severity} breach, {_pct(b.deviation)} deviation)"
        )

    content = f"Risk tier: {policy.tier}. {status}"
    if lines:
        content += "\nBreaches:\n" + "\n".join(lines)

    bullets = [f"Warning: {w}" for w in policy.warnings]
    return MemoSection("policy_assessment", "Policy Assessment", content, bullets)


def build_stress_analysis(data: MemoInput) -> MemoSection:
    stress = data.stress
    base_tier = stress.baseline.policy.tier

    lines = []
    for s in stress.scenarios:
        tier_note = f" (tier {base_tier} to {s.policy.tier})" if s.policy.tier != base_tier else ""
        dscr_note = ""
        if s.dscr_delta is not None:
            sign = "+" if s.dscr_delta >= 0 else ""
            dscr_note = f", DSCR delta: {sign}{_num(s.dscr_delta)}"
        lines.append(f"{s.label}: Tier {s.policy.tier}{tier_note}{dscr_note}")

    content = " ".join([
        f"Stress testing evaluated {len(stress.scenarios)} scenario(s).",
        f"Worst-case tier: {stress.worst_tier}.",
        "Tier degradation detected under stress." if stress.tier_degraded else "No tier degradation under stress.",
    ])
    content += "\nScenarios:\n" + "\n".join(lines)
    return MemoSection("stress_analysis", "Stress Analysis", content)


def build_pricing_summary(data: MemoInput) -> MemoSection:
    pricing = data.pricing
    bullets = [
        f"Base rate: {pricing.base_rate:.2f}%",
        f"Risk premium: +{pricing.risk_premium_bps}bps",
        f"Stress adjustment: +{pricing.stress_adjustment_bps}bps",
        f"Final rate: {pricing.final_rate:.2f}%",
    ]
    return MemoSection("pricing_summary", "Pricing Summary", "\n".join(pricing.rationale), bullets)


def build_risks_and_mitigants(data: MemoInput) -> MemoSection:
    analysis = data.analysis
    risks = [
        *analysis.weaknesses,
        *analysis.risk_signals,
        *(f"Data gap: {g}" for g in analysis.data_gaps),
    ]
    content = (
        "Identified risks:\n" + "\n".join(f"- {r}" for r in risks)
        if risks
        else "No material risks identified."
    )
    if analysis.strengths:
        content += "\n\nMitigating factors:\n" + "\n".join(f"- {m}" for m in analysis.strengths)
    return MemoSection("risks_and_mitigants", "Risks and Mitigants", content)


def build_recommendation(data: MemoInput) -> MemoSection:
    policy = data.policy
    rec = get_recommendation(policy.tier)
    content = f"Recommendation: {rec.replace('_', ' ')}.\n\n{RECOMMENDATION_TEXT[rec]}"

    if policy.tier == "C":
        content += "\n\nRecommended conditions:"
        content += "\n- Enhanced monitoring and quarterly financial reporting"
        content += "\n- Additional collateral or guarantor support as warranted"
        if policy.breaches:
            content += f"\n- Remediation plan for breached metrics: {', '.join(policy.failed_metrics)}"

    if policy.tier == "D":
        content += "\n\nDecline rationale:"
        content += f"\n- {len(policy.breaches)} policy breach(es) detected"
        for b in policy.breaches:
            content += f"\n- {b.metric}: {b.severity} breach ({_pct(b.deviation)} deviation)"

    return MemoSection("recommendation", "Recommendation", content)


SECTION_BUILDERS = (
    build_executive_summary,
    build_transaction_overview,
    build_financial_analysis,
    build_policy_assessment,
    build_stress_analysis,
    build_pricing_summary,
    build_risks_and_mitigants,
    build_recommendation,
)


def generate_memo(data: MemoInput, generated_at: Optional[str] = None) -> CreditMemo:
    sections = {}
    for builder in SECTION_BUILDERS:
        section = builder(data)
        sections[section.key] = section

    return CreditMemo(
        deal_id=data.deal_id,
        product=data.product,
        recommendation=get_recommendation(data.policy.tier),
        sections=sections,
        generated_at=generated_at or datetime.now(timezone.utc).isoformat(),
    )
