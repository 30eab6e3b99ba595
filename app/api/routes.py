"""
API routes for the credit decision pipeline

Endpoints:
- POST /v1/deals/{deal_id}/spreads/recompute
- GET  /v1/deals/{deal_id}/spread-jobs
- POST /v1/deals/{deal_id}/pricing/scenarios
- GET  /v1/deals/{deal_id}/pricing/scenarios
- POST /v1/deals/{deal_id}/pricing/decision
- POST /v1/deals/{deal_id}/underwrite
- GET  /v1/health

The bank is taken from the X-Bank-Id header. Service results are values;
failures are mapped onto HTTP status codes here.
"""

from dataclasses import asdict
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import cache_ping
from app.core.config import get_settings
from app.core.database import get_db
from app.models import PricingScenario, SpreadJob
from app.services.debt_service import DebtInstrument
from app.services.pricing_decision import DECISIONS, PricingDecisionInput, record_pricing_decision
from app.services.pricing_scenarios import generate_pricing_scenarios
from app.services.spread_jobs import enqueue_spread_recompute, list_spread_jobs
from app.services.underwrite import run_underwrite

router = APIRouter()


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


async def get_bank_id(x_bank_id: UUID = Header(..., alias="X-Bank-Id")) -> UUID:
    return x_bank_id


def raise_for_result(ok: bool, error: Optional[str], status: int) -> None:
    """Raise HTTPException for a failed service result."""
    if not ok:
        raise HTTPException(status_code=status, detail=error or "request_failed")


def job_payload(job: SpreadJob) -> dict:
    return {
        "id": job.id,
        "status": job.status,
        "requested_spread_types": job.requested_spread_types,
        "attempt": job.attempt,
        "source_document_id": job.source_document_id,
        "next_run_at": job.next_run_at,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
        "error": job.error,
        "meta": job.meta,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
    }


def scenario_payload(row: PricingScenario) -> dict:
    return {
        "id": row.id,
        "scenario_key": row.scenario_key,
        "product_type": row.product_type,
        "financial_snapshot_id": row.financial_snapshot_id,
        "loan_request_id": row.loan_request_id,
        "structure": row.structure,
        "metrics": row.metrics,
        "policy_overlays": row.policy_overlays,
        "created_at": row.created_at,
    }


# =============================================================================
# REQUEST MODELS
# =============================================================================


class RecomputeRequest(BaseModel):
    spread_types: List[str] = Field(..., min_length=1, description="Spread types to recompute")
    source_document_id: Optional[UUID] = None
    owner_type: Optional[str] = Field(default=None, description="DEAL, PERSONAL or GLOBAL")
    owner_entity_id: Optional[UUID] = None
    meta: Optional[dict] = None


class RiskItem(BaseModel):
    risk: str
    severity: str = Field(..., description="low, medium or high")


class MitigantItem(BaseModel):
    mitigant: str
    strength: str = Field(..., description="weak, moderate or strong")


class DecisionRequest(BaseModel):
    pricing_scenario_id: UUID
    decision: str = Field(..., description="APPROVED, REJECTED or RESTRUCTURE")
    rationale: str = Field(..., min_length=1)
    decided_by: str = Field(..., min_length=1)
    risks: List[RiskItem] = Field(default_factory=list)
    mitigants: List[MitigantItem] = Field(default_factory=list)


class InstrumentRequest(BaseModel):
    id: str
    principal: float
    rate: float = Field(..., description="Annual rate as a decimal, e.g. 0.065")
    amortization_months: int
    source: str = "existing"
    interest_only_months: int = 0
    term_months: Optional[int] = None
    balloon: bool = False
    payment_frequency: str = "monthly"


class UnderwriteRequest(BaseModel):
    product: Optional[str] = Field(default=None, description="SBA, LOC, EQUIPMENT, ACQUISITION or CRE")
    strategy: str = Field(default="LATEST_AVAILABLE")
    period_id: Optional[str] = None
    instruments: Optional[List[InstrumentRequest]] = None


# =============================================================================
# HEALTH CHECK
# =============================================================================


@router.get("/health", tags=["System"])
async def health_check(db: AsyncSession = Depends(get_db)):
    """Health check with database and cache verification."""
    checks = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)}"

    settings = get_settings()
    if not settings.has_redis:
        checks["cache"] = "not configured"
    else:
        success, message = await cache_ping()
        checks["cache"] = "healthy" if success else f"failed: {message}"

    # Only database is required for healthy status
    healthy = checks["database"] == "healthy"

    return {
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
        "version": settings.api_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# =============================================================================
# SPREAD JOBS
# =============================================================================


@router.post("/deals/{deal_id}/spreads/recompute", tags=["Spreads"])
async def recompute_spreads(
    deal_id: UUID,
    request: RecomputeRequest = Body(...),
    bank_id: UUID = Depends(get_bank_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Schedule spread recomputation for a deal.

    Returns one of: enqueued (new job), merged (folded into the active job),
    waiting_on_facts (no requested type is ready), noop (no valid type).
    """
    result = await enqueue_spread_recompute(
        db,
        deal_id,
        bank_id,
        request.spread_types,
        source_document_id=request.source_document_id,
        owner_type=request.owner_type,
        owner_entity_id=request.owner_entity_id,
        meta=request.meta,
    )
    if not result.ok:
        raise HTTPException(status_code=409, detail=result.error)

    return {"data": asdict(result)}


@router.get("/deals/{deal_id}/spread-jobs", tags=["Spreads"])
async def get_spread_jobs(
    deal_id: UUID,
    bank_id: UUID = Depends(get_bank_id),
    db: AsyncSession = Depends(get_db),
):
    """List the deal's spread jobs, newest first."""
    jobs = await list_spread_jobs(db, deal_id, bank_id)
    return {"data": [job_payload(j) for j in jobs], "meta": {"total": len(jobs)}}


# =============================================================================
# PRICING
# =============================================================================


@router.post("/deals/{deal_id}/pricing/scenarios", tags=["Pricing"])
async def create_pricing_scenarios(
    deal_id: UUID,
    bank_id: UUID = Depends(get_bank_id),
    db: AsyncSession = Depends(get_db),
):
    """Regenerate the deal's pricing scenarios from its latest snapshot and loan request."""
    result = await generate_pricing_scenarios(db, deal_id, bank_id)
    raise_for_result(result.ok, result.error, result.status)

    return {
        "data": [s.to_dict() for s in result.scenarios],
        "meta": {"snapshot_id": result.snapshot_id, "count": len(result.scenarios)},
    }


@router.get("/deals/{deal_id}/pricing/scenarios", tags=["Pricing"])
async def get_pricing_scenarios(
    deal_id: UUID,
    bank_id: UUID = Depends(get_bank_id),
    db: AsyncSession = Depends(get_db),
):
    """Current pricing scenarios for the deal."""
    result = await db.execute(
        select(PricingScenario)
        .where(PricingScenario.deal_id == deal_id, PricingScenario.bank_id == bank_id)
        .order_by(PricingScenario.created_at, PricingScenario.scenario_key)
    )
    rows = result.scalars().all()
    return {"data": [scenario_payload(r) for r in rows], "meta": {"count": len(rows)}}


@router.post("/deals/{deal_id}/pricing/decision", tags=["Pricing"])
async def create_pricing_decision(
    deal_id: UUID,
    request: DecisionRequest = Body(...),
    bank_id: UUID = Depends(get_bank_id),
    db: AsyncSession = Depends(get_db),
):
    """Record the pricing decision for one of the deal's scenarios."""
    if request.decision not in DECISIONS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid decision '{request.decision}'. Must be one of: {', '.join(DECISIONS)}",
        )

    result = await record_pricing_decision(
        db,
        PricingDecisionInput(
            deal_id=deal_id,
            bank_id=bank_id,
            pricing_scenario_id=request.pricing_scenario_id,
            decision=request.decision,
            rationale=request.rationale,
            decided_by=request.decided_by,
            risks=[r.model_dump() for r in request.risks],
            mitigants=[m.model_dump() for m in request.mitigants],
        ),
    )
    raise_for_result(result.ok, result.error, result.status)

    return {"data": {"decision_id": result.decision_id, "terms_id": result.terms_id}}


# =============================================================================
# UNDERWRITING
# =============================================================================


@router.post("/deals/{deal_id}/underwrite", tags=["Underwriting"])
async def underwrite_deal(
    deal_id: UUID,
    request: Optional[UnderwriteRequest] = Body(default=None),
    bank_id: UUID = Depends(get_bank_id),
    db: AsyncSession = Depends(get_db),
):
    """Run the underwriting pipeline and return tier, pricing and the credit memo."""
    request = request or UnderwriteRequest()
    instruments = (
        [DebtInstrument(**i.model_dump()) for i in request.instruments]
        if request.instruments
        else None
    )
    result = await run_underwrite(
        db,
        deal_id,
        bank_id,
        product=request.product,
        instruments=instruments,
        strategy=request.strategy,
        period_id=request.period_id,
    )
    raise_for_result(result.ok, result.error, result.status)

    return {
        "data": {
            "pipeline_complete": result.pipeline_complete,
            "product": result.product,
            "snapshot_id": result.snapshot_id,
            "period_id": result.period_id,
            "tier": result.tier,
            "stressed_tier": result.stressed_tier,
            "pricing": asdict(result.pricing),
            "memo": result.memo.to_dict(),
        }
    }
