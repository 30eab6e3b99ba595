"""Readers for the deal inputs the pipeline consumes: loan request, bank overlay, snapshots."""

from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import BankOverlay, FinancialSnapshot, LoanRequest
from app.services.policy_engine import BankOverlayConfig


DEFAULT_TERM_MONTHS = 120
DEFAULT_AMORT_MONTHS = 300
DEFAULT_INDEX_CODE = "SOFR"


@dataclass
class LoanRequestInput:
    """Loan request with structure defaults applied."""
    loan_amount: float
    term_months: int = DEFAULT_TERM_MONTHS
    amort_months: int = DEFAULT_AMORT_MONTHS
    interest_only_months: int = 0
    product_type: str = "CONVENTIONAL"
    index_code: str = DEFAULT_INDEX_CODE
    use_of_proceeds: list[str] = field(default_factory=list)
    borrower_entity_type: Optional[str] = None

    @classmethod
    def from_row(cls, row: LoanRequest) -> "LoanRequestInput":
        amount = row.requested_amount if row.requested_amount is not None else row.approved_amount
        return cls(
            loan_amount=float(amount or 0),
            term_months=row.requested_term_months or DEFAULT_TERM_MONTHS,
            amort_months=row.requested_amort_months or DEFAULT_AMORT_MONTHS,
            interest_only_months=row.requested_interest_only_months or 0,
            product_type=row.product_type or "CONVENTIONAL",
            index_code=row.requested_rate_index or DEFAULT_INDEX_CODE,
            use_of_proceeds=list(row.use_of_proceeds or []),
            borrower_entity_type=row.borrower_entity_type,
        )


async def load_latest_loan_request(db: AsyncSession, deal_id: UUID) -> Optional[LoanRequest]:
    result = await db.execute(
        select(LoanRequest)
        .where(LoanRequest.deal_id == deal_id)
        .order_by(LoanRequest.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def load_bank_overlay(db: AsyncSession, bank_id: UUID) -> BankOverlayConfig:
    """Highest active overlay version for the bank; defaults when none exists."""
    result = await db.execute(
        select(BankOverlay)
        .where(BankOverlay.bank_id == bank_id, BankOverlay.is_active.is_(True))
        .order_by(BankOverlay.version.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    return BankOverlayConfig.model_validate(row.overlay_json if row and row.overlay_json else {})


async def load_latest_snapshot(
    db: AsyncSession, deal_id: UUID, bank_id: UUID
) -> Optional[FinancialSnapshot]:
    result = await db.execute(
        select(FinancialSnapshot)
        .where(FinancialSnapshot.deal_id == deal_id, FinancialSnapshot.bank_id == bank_id)
        .order_by(FinancialSnapshot.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def load_snapshot(db: AsyncSession, snapshot_id: UUID) -> Optional[FinancialSnapshot]:
    return await db.get(FinancialSnapshot, snapshot_id)
