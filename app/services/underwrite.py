"""
Underwriting Pipeline

Worker entry point. Runs the deterministic stages in order for one deal:

    facts -> model -> snapshot -> product analysis -> policy -> stress
          -> risk pricing -> memo

and persists the resulting deal snapshot. A stage that cannot produce
output stops the pipeline and is reported on the result, never raised.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.ledger import EventSink, get_event_sink
from app.models import (
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    JOB_SUCCEEDED,
    DealSpread,
    FinancialSnapshot,
    SpreadJob,
)
from app.models.schema import utcnow
from app.services.credit_lenses import PRODUCTS, compute_product_analysis
from app.services.credit_metrics import PERIOD_STRATEGIES, compute_credit_snapshot
from app.services.deal_inputs import load_bank_overlay, load_latest_loan_request
from app.services.debt_service import DebtInstrument
from app.services.financial_facts import (
    build_financial_model,
    build_snapshot_payload,
    get_visible_facts,
    snapshot_hash,
)
from app.services.index_rates import DatabaseIndexRateSource, IndexRateSource, RateFeedUnavailable
from app.services.memo_engine import CreditMemo, MemoInput, generate_memo
from app.services.policy_engine import evaluate_policy
from app.services.risk_pricing import RiskPricingResult, compute_risk_pricing
from app.services.spread_jobs import transition_job
from app.services.stress_engine import run_stress_scenarios

logger = structlog.get_logger()


PRICING_INDEX_CODE = "PRIME"

# Loan request product_type -> credit product
PRODUCT_ALIASES = {
    "SBA_7A": "SBA",
    "SBA_504": "SBA",
    "LINE_OF_CREDIT": "LOC",
    "EQUIPMENT_LOAN": "EQUIPMENT",
    "CONVENTIONAL": "CRE",
}


@dataclass
class UnderwriteResult:
    ok: bool
    pipeline_complete: bool
    stage: Optional[str] = None  # failing stage when the pipeline stopped early
    product: Optional[str] = None
    snapshot_id: Optional[UUID] = None
    period_id: Optional[str] = None
    tier: Optional[str] = None
    stressed_tier: Optional[str] = None
    pricing: Optional[RiskPricingResult] = None
    memo: Optional[CreditMemo] = None
    error: Optional[str] = None
    status: int = 200


def resolve_product(product_type: Optional[str]) -> str:
    if product_type in PRODUCTS:
        return product_type
    return PRODUCT_ALIASES.get(product_type or "", "CRE")


async def _pricing_index_rate(rate_source: IndexRateSource, deal_id: UUID) -> Optional[float]:
    try:
        rates = await rate_source.get_latest_index_rates()
    except RateFeedUnavailable as e:
        logger.warning("underwrite.rates.unavailable", deal_id=str(deal_id), error=str(e))
        return None
    quote = rates.get(PRICING_INDEX_CODE)
    return quote.rate_pct if quote else None


async def run_underwrite(
    db: AsyncSession,
    deal_id: UUID,
    bank_id: UUID,
    product: Optional[str] = None,
    instruments: Optional[list[DebtInstrument]] = None,
    strategy: str = "LATEST_AVAILABLE",
    period_id: Optional[str] = None,
    rate_source: Optional[IndexRateSource] = None,
    sink: Optional[EventSink] = None,
) -> UnderwriteResult:
    sink = sink or get_event_sink()
    rate_source = rate_source or DatabaseIndexRateSource(db)
    log = logger.bind(deal_id=str(deal_id), bank_id=str(bank_id))

    if product is None:
        loan_row = await load_latest_loan_request(db, deal_id)
        product = resolve_product(loan_row.product_type if loan_row else None)
    if product not in PRODUCTS:
        return UnderwriteResult(
            ok=False, pipeline_complete=False, stage="product", product=product,
            error="unknown_product", status=422,
        )
    if strategy not in PERIOD_STRATEGIES:
        return UnderwriteResult(
            ok=False, pipeline_complete=False, stage="strategy", product=product,
            error="unknown_period_strategy", status=422,
        )

    # Facts -> model -> snapshot
    visible = await get_visible_facts(db, deal_id, bank_id)
    model = build_financial_model(str(deal_id), visible.facts)
    overlay = await load_bank_overlay(db, bank_id)

    snapshot = compute_credit_snapshot(model, strategy, period_id, instruments)
    if snapshot is None:
        log.info("underwrite.no_usable_period", facts=visible.total)
        return UnderwriteResult(
            ok=False, pipeline_complete=False, stage="no_usable_period", product=product,
            error="no_usable_period", status=422,
        )

    payload = build_snapshot_payload(snapshot, visible.facts)
    row = FinancialSnapshot(
        deal_id=deal_id,
        bank_id=bank_id,
        period_id=snapshot.period.period_id,
        snapshot_json=payload,
        snapshot_hash=snapshot_hash(payload),
    )
    db.add(row)
    await db.flush()
    snapshot_id = row.id
    await db.commit()

    # Analysis -> policy -> stress -> pricing -> memo
    analysis = compute_product_analysis(snapshot, product)
    policy = evaluate_policy(snapshot, product, overlay)
    stress = run_stress_scenarios(
        model, instruments, product, overlay, strategy=strategy, period_id=snapshot.period.period_id
    )
    if stress is None:
        return UnderwriteResult(
            ok=False, pipeline_complete=False, stage="stress", product=product,
            snapshot_id=snapshot_id, period_id=snapshot.period.period_id, tier=policy.tier,
            error="no_usable_period", status=422,
        )

    index_rate = await _pricing_index_rate(rate_source, deal_id)
    pricing = compute_risk_pricing(product, policy.tier, stress.worst_tier, index_rate, overlay)

    memo = generate_memo(
        MemoInput(
            deal_id=str(deal_id),
            product=product,
            snapshot=snapshot,
            analysis=analysis,
            policy=policy,
            stress=stress,
            pricing=pricing,
        )
    )

    log.info(
        "underwrite.completed",
        product=product,
        tier=policy.tier,
        stressed_tier=stress.worst_tier,
        final_rate=pricing.final_rate,
    )
    await sink.log_pipeline_ledger(
        deal_id=deal_id,
        bank_id=bank_id,
        event_key="underwrite.completed",
        status="ok",
        payload={
            "snapshot_id": str(snapshot_id),
            "product": product,
            "tier": policy.tier,
            "stressed_tier": stress.worst_tier,
            "recommendation": memo.recommendation,
        },
    )

    return UnderwriteResult(
        ok=True,
        pipeline_complete=True,
        product=product,
        snapshot_id=snapshot_id,
        period_id=snapshot.period.period_id,
        tier=policy.tier,
        stressed_tier=stress.worst_tier,
        pricing=pricing,
        memo=memo,
    )


async def _finish_spreads(
    db: AsyncSession,
    job: SpreadJob,
    spread_types: list[str],
    status: str,
    snapshot_id: Optional[UUID],
    error: Optional[str],
) -> None:
    now = utcnow()
    result = await db.execute(
        select(DealSpread).where(
            DealSpread.deal_id == job.deal_id,
            DealSpread.bank_id == job.bank_id,
            DealSpread.spread_type.in_(spread_types),
            DealSpread.status == "queued",
        )
    )
    for spread in result.scalars().all():
        spread.status = status
        spread.error = error
        spread.error_code = "PIPELINE_FAILED" if error else None
        spread.rendered_json = {
            **(spread.rendered_json or {}),
            "status": status,
            "meta": {"status": status, "snapshot_id": str(snapshot_id) if snapshot_id else None},
        }
        spread.finished_at = now
        spread.updated_at = now
    await db.commit()


async def process_spread_job(
    db: AsyncSession,
    job_id: UUID,
    product: Optional[str] = None,
    rate_source: Optional[IndexRateSource] = None,
    sink: Optional[EventSink] = None,
) -> UnderwriteResult:
    """
    Run the pipeline for a queued job and record the outcome.

    Only the types requested when the run started are finished. Types merged
    in during the run keep their placeholders and the job is requeued.
    """
    job = await transition_job(db, job_id, JOB_RUNNING)
    deal_id, bank_id = job.deal_id, job.bank_id
    started_types = list(job.requested_spread_types or [])
    product = product or (job.meta or {}).get("product")

    try:
        result = await run_underwrite(
            db, deal_id, bank_id, product=product, rate_source=rate_source, sink=sink
        )
    except Exception as e:
        await db.rollback()
        logger.error("spread_jobs.process.failed", job_id=str(job_id), error=str(e)[:200])
        job = await transition_job(db, job_id, JOB_FAILED, error=str(e)[:500], started_types=started_types)
        await _finish_spreads(db, job, started_types, "error", None, str(e)[:500])
        return UnderwriteResult(
            ok=False, pipeline_complete=False, stage="exception", error=str(e)[:200], status=500
        )

    if result.pipeline_complete:
        job = await transition_job(db, job_id, JOB_SUCCEEDED, started_types=started_types)
        await _finish_spreads(db, job, started_types, "ready", result.snapshot_id, None)
    else:
        job = await transition_job(db, job_id, JOB_FAILED, error=result.error, started_types=started_types)
        await _finish_spreads(db, job, started_types, "error", result.snapshot_id, result.error)

    if job.status == JOB_QUEUED:
        logger.info("spread_jobs.process.requeued", job_id=str(job_id), spread_types=job.requested_spread_types)
    return result
