"""
Pricing Decision Recording

Records the single pricing decision for a deal from one of its scenarios:
replaces any prior decision, extracts immutable PricingTerms and renders the
six pricing narrative blocks from the scenario's numbers. Narratives are
upserted under a hash of the decision id, so replaying the upsert for the
same decision leaves one row.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.ledger import EventSink, get_event_sink
from app.models import (
    CanonicalMemoNarrative,
    FinancialSnapshot,
    PricingDecision,
    PricingScenario,
    PricingTerms,
)
from app.models.schema import utcnow

logger = structlog.get_logger()


NARRATIVE_MODEL = "pricing_decision_engine_v1"
DECISIONS = ("APPROVED", "REJECTED", "RESTRUCTURE")


@dataclass
class PricingDecisionInput:
    deal_id: UUID
    bank_id: UUID
    pricing_scenario_id: UUID
    decision: str  # APPROVED, REJECTED, RESTRUCTURE
    rationale: str
    decided_by: str
    risks: list[dict[str, str]] = field(default_factory=list)  # [{"risk", "severity"}]
    mitigants: list[dict[str, str]] = field(default_factory=list)  # [{"mitigant", "strength"}]


@dataclass
class RecordDecisionResult:
    ok: bool
    decision_id: Optional[UUID] = None
    terms_id: Optional[UUID] = None
    error: Optional[str] = None
    status: int = 200


# =============================================================================
# NARRATIVES
# =============================================================================


def _money(value: Any) -> str:
    return f"${float(value or 0):,.0f}"


def build_loan_structure_narrative(structure: dict[str, Any], product_type: str) -> str:
    parts = [
        f"**Product**: {product_type}",
        f"**Loan Amount**: {_money(structure.get('loan_amount'))}",
        f"**Rate**: {structure.get('index_code')} + {structure.get('spread_bps')}bps = "
        f"{float(structure.get('all_in_rate_pct') or 0):.2f}%",
        f"**Term**: {structure.get('term_months') or 'n/a'} months",
        f"**Amortization**: {structure.get('amort_months') or 'n/a'} months",
    ]
    if (structure.get("interest_only_months") or 0) > 0:
        parts.append(f"**Interest Only**: {structure['interest_only_months']} months")
    parts.append(f"**Guaranty**: {structure.get('guaranty') or 'n/a'}")

    fees = structure.get("fees") or {}
    if fees.get("origination_pct"):
        parts.append(f"**Origination Fee**: {fees['origination_pct']}%")
    if fees.get("sba_guaranty_fee_pct"):
        parts.append(f"**SBA Guaranty Fee**: {fees['sba_guaranty_fee_pct']}%")
    return "\n".join(parts)


def build_risk_narrative(risks: list[dict[str, str]], mitigants: list[dict[str, str]]) -> str:
    parts = []
    if risks:
        parts.append("**Risks:**")
        parts.extend(f"- [{r.get('severity', '').upper()}] {r.get('risk', '')}" for r in risks)
    if mitigants:
        parts.append("\n**Mitigants:**")
        parts.extend(f"- [{m.get('strength', '').upper()}] {m.get('mitigant', '')}" for m in mitigants)
    return "\n".join(parts) or "No additional risks or mitigants identified."


def build_returns_narrative(metrics: dict[str, Any]) -> str:
    parts = []
    if metrics.get("dscr") is not None:
        parts.append(f"**DSCR**: {metrics['dscr']:.2f}x")
    if metrics.get("dscr_stressed_300bps") is not None:
        parts.append(f"**Stressed DSCR (+300bps)**: {metrics['dscr_stressed_300bps']:.2f}x")
    if metrics.get("ltv_pct") is not None:
        parts.append(f"**LTV**: {metrics['ltv_pct'] * 100:.1f}%")
    if metrics.get("debt_yield_pct") is not None:
        parts.append(f"**Debt Yield**: {metrics['debt_yield_pct'] * 100:.1f}%")
    if metrics.get("annual_debt_service") is not None:
        parts.append(f"**Annual Debt Service**: {_money(metrics['annual_debt_service'])}")
    return "\n".join(parts) or "Coverage metrics pending."


def build_global_cash_flow_narrative(metrics: dict[str, Any]) -> str:
    if metrics.get("global_cf_impact") is not None:
        return f"**Global Cash Flow**: {_money(metrics['global_cf_impact'])}"
    return "Global cash flow impact not yet computed."


def build_policy_narrative(overlays: list[dict[str, Any]]) -> str:
    if not overlays:
        return "All policy requirements satisfied."
    lines = []
    for o in overlays:
        section = f" ({o['section']})" if o.get("section") else ""
        status = "Applied" if o.get("applied") else "Waived"
        impact = f". {o['impact']}" if o.get("impact") else ""
        lines.append(f"- **{o.get('source')}**{section}: {o.get('rule')}: {status}{impact}")
    return "\n".join(lines)


def build_decision_narratives(
    scenario: PricingScenario,
    rationale: str,
    risks: list[dict[str, str]],
    mitigants: list[dict[str, str]],
) -> dict[str, str]:
    structure = scenario.structure or {}
    metrics = scenario.metrics or {}
    return {
        "loan_structure": build_loan_structure_narrative(structure, scenario.product_type),
        "pricing_rationale": rationale,
        "risk_and_mitigants": build_risk_narrative(risks, mitigants),
        "returns_and_coverage": build_returns_narrative(metrics),
        "global_cash_flow_impact": build_global_cash_flow_narrative(metrics),
        "policy_compliance": build_policy_narrative(scenario.policy_overlays or []),
    }


def decision_input_hash(decision_id: UUID) -> str:
    return hashlib.sha256(f"decision_{decision_id}".encode()).hexdigest()


# =============================================================================
# PERSISTENCE
# =============================================================================


def build_pricing_terms(decision_id: UUID, structure: dict[str, Any]) -> PricingTerms:
    spread_bps = structure.get("spread_bps")
    amort = structure.get("amort_months")
    term = structure.get("term_months")
    return PricingTerms(
        pricing_decision_id=decision_id,
        interest_rate=structure.get("all_in_rate_pct"),
        spread=spread_bps / 100 if spread_bps else None,
        index_code=structure.get("index_code"),
        base_rate=structure.get("base_rate_pct"),
        amort_years=round(amort / 12) if amort else None,
        term_years=round(term / 12) if term else None,
        loan_amount=structure.get("loan_amount"),
        fees=structure.get("fees"),
        prepayment=structure.get("prepayment"),
        guaranty=structure.get("guaranty"),
    )


async def upsert_memo_narratives(
    db: AsyncSession,
    deal_id: UUID,
    bank_id: UUID,
    input_hash: str,
    narratives: dict[str, str],
) -> CanonicalMemoNarrative:
    """Get-or-create keyed by (deal_id, bank_id, input_hash). Caller commits."""
    result = await db.execute(
        select(CanonicalMemoNarrative).where(
            CanonicalMemoNarrative.deal_id == deal_id,
            CanonicalMemoNarrative.bank_id == bank_id,
            CanonicalMemoNarrative.input_hash == input_hash,
        )
    )
    row = result.scalar_one_or_none()
    if row:
        row.narratives = narratives
        row.model = NARRATIVE_MODEL
        row.generated_at = utcnow()
    else:
        row = CanonicalMemoNarrative(
            deal_id=deal_id,
            bank_id=bank_id,
            input_hash=input_hash,
            narratives=narratives,
            model=NARRATIVE_MODEL,
        )
        db.add(row)
    return row


async def record_pricing_decision(
    db: AsyncSession,
    data: PricingDecisionInput,
    sink: Optional[EventSink] = None,
) -> RecordDecisionResult:
    sink = sink or get_event_sink()

    result = await db.execute(
        select(PricingScenario).where(
            PricingScenario.id == data.pricing_scenario_id,
            PricingScenario.deal_id == data.deal_id,
        )
    )
    scenario = result.scalar_one_or_none()
    if scenario is None:
        return RecordDecisionResult(ok=False, error="scenario_not_found", status=404)

    snapshot = await db.get(FinancialSnapshot, scenario.financial_snapshot_id)
    if snapshot is None:
        return RecordDecisionResult(ok=False, error="snapshot_missing", status=422)

    try:
        prior_ids = select(PricingDecision.id).where(PricingDecision.deal_id == data.deal_id)
        await db.execute(
            delete(PricingTerms)
            .where(PricingTerms.pricing_decision_id.in_(prior_ids))
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            delete(PricingDecision)
            .where(PricingDecision.deal_id == data.deal_id)
            .execution_options(synchronize_session=False)
        )

        decision = PricingDecision(
            deal_id=data.deal_id,
            bank_id=data.bank_id,
            pricing_scenario_id=scenario.id,
            financial_snapshot_id=scenario.financial_snapshot_id,
            decision=data.decision,
            rationale=data.rationale,
            risks=data.risks,
            mitigants=data.mitigants,
            decided_by=data.decided_by,
        )
        db.add(decision)
        await db.flush()

        terms = build_pricing_terms(decision.id, scenario.structure or {})
        db.add(terms)

        narratives = build_decision_narratives(scenario, data.rationale, data.risks, data.mitigants)
        await upsert_memo_narratives(
            db, data.deal_id, data.bank_id, decision_input_hash(decision.id), narratives
        )

        await db.flush()
        decision_id, terms_id = decision.id, terms.id
        scenario_key, snapshot_id = scenario.scenario_key, scenario.financial_snapshot_id
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error("pricing.decision.insert_failed", deal_id=str(data.deal_id), error=str(e)[:200])
        return RecordDecisionResult(ok=False, error=f"decision_insert_failed: {str(e)[:200]}", status=500)

    logger.info(
        "pricing.decision.recorded",
        deal_id=str(data.deal_id),
        decision=data.decision,
        scenario_key=scenario_key,
    )

    await sink.log_pipeline_ledger(
        deal_id=data.deal_id,
        bank_id=data.bank_id,
        event_key="pricing.decision.made",
        status="ok",
        payload={
            "decision_id": str(decision_id),
            "scenario_key": scenario_key,
            "decision": data.decision,
            "snapshot_id": str(snapshot_id),
        },
    )
    await sink.log_pipeline_ledger(
        deal_id=data.deal_id,
        bank_id=data.bank_id,
        event_key="pricing.pipeline.cleared",
        status="ok",
        payload={"decision_id": str(decision_id), "decision": data.decision},
    )
    await sink.write_system_event(
        event_type="lifecycle",
        severity="info",
        source_system="pricing_decision",
        deal_id=data.deal_id,
        bank_id=data.bank_id,
        payload={
            "action": "decision_recorded",
            "decision_id": str(decision_id),
            "terms_id": str(terms_id),
            "decision": data.decision,
            "scenario_key": scenario_key,
        },
    )

    return RecordDecisionResult(ok=True, decision_id=decision_id, terms_id=terms_id)
