"""
Pricing Scenario Generation

Builds priced loan structures for a deal from its latest financial
snapshot, loan request, live index rates and the bank overlay:

- BASE          bank base spread, requested structure
- CONSERVATIVE  +50 bps, amortization capped at 240 months, stronger guaranty
- STRETCH       -50 bps (floor 100 bps), only when snapshot DSCR meets the bank minimum
- SBA_7A        SBA alternative at 275 bps, when not already SBA and not ineligible

Regeneration replaces the deal's scenario set. Decisions reference
scenarios, so they are deleted first; the delete and the insert commit
together, so readers never see an empty set.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.ledger import EventSink, get_event_sink
from app.models import (
    ACTIVE_JOB_STATUSES,
    PricingDecision,
    PricingScenario,
    PricingTerms,
    SpreadJob,
)
from app.services.deal_inputs import (
    LoanRequestInput,
    load_bank_overlay,
    load_latest_loan_request,
    load_latest_snapshot,
)
from app.services.debt_service import annual_debt_service, monthly_payment
from app.services.index_rates import (
    DatabaseIndexRateSource,
    IndexRateQuote,
    IndexRateSource,
    RateFeedUnavailable,
)
from app.services.policy_engine import BankOverlayConfig
from app.services.sba_eligibility import SbaEligibility, evaluate_sba_eligibility, snapshot_number

logger = structlog.get_logger()


DEFAULT_MIN_DSCR = 1.25
DEFAULT_MAX_LTV = 0.80
DEFAULT_BASE_SPREAD_BPS = 250

CONSERVATIVE_ADD_BPS = 50
CONSERVATIVE_MAX_AMORT_MONTHS = 240
STRETCH_CUT_BPS = 50
STRETCH_FLOOR_BPS = 100

SBA_7A_SPREAD_BPS = 275
SBA_7A_AMORT_MONTHS = 300
SBA_7A_TERM_MONTHS = 120
SBA_GUARANTY_FEE_THRESHOLD = 1_000_000

STRESS_RATE_ADD_PCT = 3.0

DEFAULT_GUARANTY = "Full personal guaranty required"


@dataclass
class PricingStructure:
    index_code: str
    base_rate_pct: float
    spread_bps: int
    all_in_rate_pct: float
    loan_amount: float
    term_months: int
    amort_months: int
    interest_only_months: int
    fees: dict[str, float]
    prepayment: dict[str, Any]
    guaranty: str


@dataclass
class PricingMetrics:
    dscr: Optional[float]
    dscr_stressed_300bps: Optional[float]
    ltv_pct: Optional[float]
    debt_yield_pct: Optional[float]
    annual_debt_service: Optional[float]
    monthly_pi: Optional[float]
    monthly_io: Optional[float]
    global_cf_impact: Optional[float] = None


@dataclass
class PolicyOverlayNote:
    source: str
    rule: str
    applied: bool = True
    section: Optional[str] = None
    impact: Optional[str] = None


@dataclass
class GeneratedScenario:
    scenario_key: str
    product_type: str
    structure: PricingStructure
    metrics: PricingMetrics
    policy_overlays: list[PolicyOverlayNote] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class GenerateScenariosResult:
    ok: bool
    scenarios: list[GeneratedScenario] = field(default_factory=list)
    snapshot_id: Optional[UUID] = None
    error: Optional[str] = None
    status: int = 200


def _dscr(cash_flow: Optional[float], ads: Optional[float]) -> Optional[float]:
    if not cash_flow or not ads:
        return None
    return cash_flow / ads


def resolve_base_rate(index_code: str, rates: dict[str, IndexRateQuote]) -> float:
    """Requested index, then SOFR, then the configured fallback."""
    for code in (index_code, "SOFR"):
        quote = rates.get(code)
        if quote is not None:
            return quote.rate_pct
    return get_settings().fallback_base_rate_pct


# =============================================================================
# SCENARIO BUILDER (pure)
# =============================================================================


def build_pricing_scenarios(
    snapshot: dict[str, Any],
    loan: LoanRequestInput,
    rates: dict[str, IndexRateQuote],
    overlay: BankOverlayConfig,
    sba: SbaEligibility,
) -> list[GeneratedScenario]:
    noi = snapshot_number(snapshot, "noi_ttm")
    cash_flow = snapshot_number(snapshot, "cash_flow_available")
    if cash_flow is None:
        cash_flow = noi
    collateral_value = snapshot_number(snapshot, "collateral_gross_value")
    global_cf = snapshot_number(snapshot, "gcf_global_cash_flow")
    snapshot_dscr = snapshot_number(snapshot, "dscr")

    min_dscr = DEFAULT_MIN_DSCR if overlay.min_dscr is None else overlay.min_dscr
    max_ltv = DEFAULT_MAX_LTV if overlay.max_ltv is None else overlay.max_ltv
    base_spread = DEFAULT_BASE_SPREAD_BPS if overlay.base_spread_bps is None else overlay.base_spread_bps

    base_rate = resolve_base_rate(loan.index_code, rates)

    def build(
        key: str,
        spread_bps: int,
        product: str,
        amort_months: Optional[int] = None,
        term_months: Optional[int] = None,
        guaranty: str = DEFAULT_GUARANTY,
    ) -> GeneratedScenario:
        amount = loan.loan_amount
        amort = loan.amort_months if amort_months is None else amort_months
        term = loan.term_months if term_months is None else term_months
        io_months = loan.interest_only_months
        is_sba = product.startswith("SBA")

        all_in = base_rate + spread_bps / 100
        ads = annual_debt_service(amount, all_in, amort)
        pi = monthly_payment(amount, all_in, amort)
        io = amount * (all_in / 100 / 12)

        dscr = _dscr(cash_flow, ads)
        dscr_stressed = _dscr(cash_flow, annual_debt_service(amount, all_in + STRESS_RATE_ADD_PCT, amort))

        ltv = amount / collateral_value if collateral_value and collateral_value > 0 else None
        debt_yield = noi / amount if noi and amount > 0 else None

        overlays: list[PolicyOverlayNote] = []
        if dscr is not None and dscr < min_dscr:
            overlays.append(PolicyOverlayNote(
                source="Bank Credit Policy",
                rule=f"Min DSCR {min_dscr:.2f}x",
                impact=f"Actual DSCR {dscr:.2f}x is below policy minimum; exception required",
            ))
        if ltv is not None and ltv > max_ltv:
            overlays.append(PolicyOverlayNote(
                source="Bank Credit Policy",
                rule=f"Max LTV {max_ltv * 100:.0f}%",
                impact=f"Actual LTV {ltv * 100:.1f}% exceeds policy limit",
            ))

        fees: dict[str, float] = {"origination_pct": 0.5 if is_sba else 1.0}
        if is_sba:
            first_reason = f": {sba.reasons[0]}" if sba.reasons else ""
            overlays.append(PolicyOverlayNote(
                source="SBA SOP 50 10",
                section="7(a) General",
                rule="SBA eligibility check",
                impact=f"Status: {sba.status}{first_reason}",
            ))
            small_loan = amount <= SBA_GUARANTY_FEE_THRESHOLD
            if sba.status in ("eligible", "conditional"):
                overlays.append(PolicyOverlayNote(
                    source="SBA SOP 50 10",
                    section="7(a) Fees",
                    rule="Guaranty fee schedule applies",
                    impact=(
                        "0.25% (loans <= $1M) per SBA fee schedule"
                        if small_loan
                        else "3.50% (loans > $1M) per SBA fee schedule"
                    ),
                ))
            fees["sba_guaranty_fee_pct"] = 0.25 if small_loan else 3.5

        structure = PricingStructure(
            index_code=loan.index_code,
            base_rate_pct=base_rate,
            spread_bps=spread_bps,
            all_in_rate_pct=all_in,
            loan_amount=amount,
            term_months=term,
            amort_months=amort,
            interest_only_months=io_months,
            fees=fees,
            prepayment=(
                {"type": "SBA Standard", "penalty_pct": 5}
                if is_sba
                else {"type": "Step-down", "penalty_pct": 3}
            ),
            guaranty=guaranty,
        )
        metrics = PricingMetrics(
            dscr=dscr,
            dscr_stressed_300bps=dscr_stressed,
            ltv_pct=ltv,
            debt_yield_pct=debt_yield,
            annual_debt_service=ads,
            monthly_pi=pi,
            monthly_io=io if io_months > 0 else None,
            global_cf_impact=global_cf,
        )
        return GeneratedScenario(key, product, structure, metrics, overlays)

    scenarios = [
        build("BASE", base_spread, loan.product_type),
        build(
            "CONSERVATIVE",
            base_spread + CONSERVATIVE_ADD_BPS,
            loan.product_type,
            amort_months=min(loan.amort_months, CONSERVATIVE_MAX_AMORT_MONTHS),
            guaranty="Full personal guaranty with additional collateral pledge",
        ),
    ]

    if cash_flow and noi and snapshot_dscr is not None and snapshot_dscr >= min_dscr:
        scenarios.append(build(
            "STRETCH",
            max(base_spread - STRETCH_CUT_BPS, STRETCH_FLOOR_BPS),
            loan.product_type,
            guaranty="Limited personal guaranty",
        ))

    if sba.status != "ineligible" and not loan.product_type.startswith("SBA"):
        scenarios.append(build(
            "SBA_7A",
            SBA_7A_SPREAD_BPS,
            "SBA_7A",
            amort_months=SBA_7A_AMORT_MONTHS,
            term_months=SBA_7A_TERM_MONTHS,
            guaranty="SBA standard guaranty (75%)",
        ))

    return scenarios


# =============================================================================
# GENERATION (I/O)
# =============================================================================


async def count_active_jobs(db: AsyncSession, deal_id: UUID, bank_id: UUID) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(SpreadJob)
        .where(
            SpreadJob.deal_id == deal_id,
            SpreadJob.bank_id == bank_id,
            SpreadJob.status.in_(ACTIVE_JOB_STATUSES),
        )
    )
    return result.scalar_one()


async def replace_pricing_scenarios(
    db: AsyncSession,
    deal_id: UUID,
    bank_id: UUID,
    snapshot_id: UUID,
    loan_request_id: Optional[UUID],
    scenarios: list[GeneratedScenario],
) -> list[PricingScenario]:
    """Delete terms, decisions and scenarios for the deal, then insert the new set. One commit."""
    decision_ids = select(PricingDecision.id).where(PricingDecision.deal_id == deal_id)
    await db.execute(
        delete(PricingTerms)
        .where(PricingTerms.pricing_decision_id.in_(decision_ids))
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(PricingDecision)
        .where(PricingDecision.deal_id == deal_id)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(PricingScenario)
        .where(PricingScenario.deal_id == deal_id)
        .execution_options(synchronize_session=False)
    )

    rows = []
    for s in scenarios:
        data = s.to_dict()
        row = PricingScenario(
            deal_id=deal_id,
            bank_id=bank_id,
            financial_snapshot_id=snapshot_id,
            loan_request_id=loan_request_id,
            scenario_key=s.scenario_key,
            product_type=s.product_type,
            structure=data["structure"],
            metrics=data["metrics"],
            policy_overlays=data["policy_overlays"],
        )
        db.add(row)
        rows.append(row)

    await db.flush()
    await db.commit()
    return rows


async def generate_pricing_scenarios(
    db: AsyncSession,
    deal_id: UUID,
    bank_id: UUID,
    rate_source: Optional[IndexRateSource] = None,
    sink: Optional[EventSink] = None,
) -> GenerateScenariosResult:
    """Generate and persist the deal's pricing scenarios."""
    sink = sink or get_event_sink()
    rate_source = rate_source or DatabaseIndexRateSource(db)

    snapshot_row = await load_latest_snapshot(db, deal_id, bank_id)
    if snapshot_row is None:
        return GenerateScenariosResult(ok=False, error="no_financial_snapshot", status=422)

    if await count_active_jobs(db, deal_id, bank_id) > 0:
        return GenerateScenariosResult(ok=False, error="spreads_still_generating", status=409)

    loan_row = await load_latest_loan_request(db, deal_id)
    if loan_row is None:
        return GenerateScenariosResult(ok=False, error="no_loan_request", status=422)
    loan = LoanRequestInput.from_row(loan_row)
    snapshot_id, loan_request_id = snapshot_row.id, loan_row.id

    try:
        rates = await rate_source.get_latest_index_rates()
    except RateFeedUnavailable as e:
        logger.warning("pricing.rates.unavailable", deal_id=str(deal_id), error=str(e))
        return GenerateScenariosResult(ok=False, error="rate_feed_unavailable", status=502)

    overlay = await load_bank_overlay(db, bank_id)
    snapshot = snapshot_row.snapshot_json or {}

    sba = evaluate_sba_eligibility(
        snapshot,
        loan_amount=loan.loan_amount,
        use_of_proceeds=loan.use_of_proceeds,
        borrower_entity_type=loan.borrower_entity_type,
        loan_product_type=loan.product_type,
    )

    scenarios = build_pricing_scenarios(snapshot, loan, rates, overlay, sba)

    try:
        await replace_pricing_scenarios(
            db, deal_id, bank_id, snapshot_id, loan_request_id, scenarios
        )
    except Exception as e:
        await db.rollback()
        logger.error("pricing.scenarios.insert_failed", deal_id=str(deal_id), error=str(e)[:200])
        return GenerateScenariosResult(ok=False, error=f"insert_failed: {str(e)[:200]}", status=500)

    keys = [s.scenario_key for s in scenarios]
    logger.info("pricing.scenarios.replaced", deal_id=str(deal_id), keys=keys)

    await sink.log_pipeline_ledger(
        deal_id=deal_id,
        bank_id=bank_id,
        event_key="pricing.scenarios.generated",
        status="ok",
        payload={
            "snapshot_id": str(snapshot_id),
            "scenario_count": len(scenarios),
            "keys": keys,
            "loan_request_id": str(loan_request_id),
        },
    )

    return GenerateScenariosResult(ok=True, scenarios=scenarios, snapshot_id=snapshot_id)
