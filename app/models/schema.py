"""
Credit Decision Pipeline - Database Schema

Tables for normalized financial facts, recomputation jobs, financial
snapshots, pricing scenarios/decisions and the audit ledger.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite test databases)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# owner_entity_id for deal-level spreads (unique constraints need a non-null value)
SENTINEL_UUID = UUID("00000000-0000-0000-0000-000000000000")

# Spread job statuses
JOB_QUEUED = "QUEUED"
JOB_RUNNING = "RUNNING"
JOB_SUCCEEDED = "SUCCEEDED"
JOB_FAILED = "FAILED"
ACTIVE_JOB_STATUSES = (JOB_QUEUED, JOB_RUNNING)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


# =============================================================================
# INPUT TABLES (written by extraction / intake, read here)
# =============================================================================


class FinancialFact(Base):
    """Normalized numeric fact for a deal, one value per fact_key and period."""

    __tablename__ = "financial_facts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    deal_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    bank_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    fact_type: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # INCOME_STATEMENT, BALANCE_SHEET, TAX_RETURN, PERSONAL_FINANCIAL_STATEMENT, COLLATERAL
    fact_key: Mapped[str] = mapped_column(String(100), nullable=False)  # REVENUE, EBITDA, CASH, ...
    value_num: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 4))

    period_end: Mapped[Optional[date]] = mapped_column(Date)
    period_type: Mapped[Optional[str]] = mapped_column(String(10))  # FYE, TTM, YTD, INTERIM

    owner_type: Mapped[str] = mapped_column(String(20), default="DEAL", server_default="DEAL")
    source_document_id: Mapped[Optional[UUID]] = mapped_column(Uuid)
    is_superseded: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_financial_facts_deal", "deal_id", "bank_id"),
        Index("idx_financial_facts_type", "deal_id", "bank_id", "fact_type"),
    )


class RentRollRow(Base):
    """Normalized rent roll unit row."""

    __tablename__ = "deal_rent_roll_rows"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    deal_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    bank_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    unit_id: Mapped[str] = mapped_column(String(50), nullable=False)
    tenant_name: Mapped[Optional[str]] = mapped_column(String(255))
    occupancy_status: Mapped[Optional[str]] = mapped_column(String(20))  # occupied, vacant
    sqft: Mapped[Optional[int]] = mapped_column(Integer)
    monthly_rent: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    as_of_date: Mapped[Optional[date]] = mapped_column(Date)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("idx_rent_roll_rows_deal", "deal_id", "bank_id"),)


class LoanRequest(Base):
    """Borrower loan request for a deal."""

    __tablename__ = "deal_loan_requests"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    deal_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    bank_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    product_type: Mapped[str] = mapped_column(
        String(30), default="CONVENTIONAL", server_default="CONVENTIONAL"
    )  # CONVENTIONAL, SBA_7A, SBA_504, LOC, EQUIPMENT, CRE
    requested_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(16, 2))
    approved_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(16, 2))
    requested_term_months: Mapped[Optional[int]] = mapped_column(Integer)
    requested_amort_months: Mapped[Optional[int]] = mapped_column(Integer)
    requested_interest_only_months: Mapped[Optional[int]] = mapped_column(Integer)
    requested_rate_index: Mapped[Optional[str]] = mapped_column(String(20))  # SOFR, PRIME, UST_5Y
    use_of_proceeds: Mapped[list] = mapped_column(JSONType, default=list)
    borrower_entity_type: Mapped[Optional[str]] = mapped_column(String(50))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("idx_loan_requests_deal", "deal_id", "created_at"),)


class BankOverlay(Base):
    """Versioned bank credit-policy overlay (see BankOverlayConfig for the JSON shape)."""

    __tablename__ = "bank_overlays"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    bank_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true")
    overlay_json: Mapped[dict] = mapped_column(JSONType, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("bank_id", "version", name="uq_bank_overlays_bank_version"),
    )


class IndexRate(Base):
    """Daily benchmark index observation (SOFR, PRIME, UST_5Y, UST_10Y)."""

    __tablename__ = "index_rates"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    index_code: Mapped[str] = mapped_column(String(20), nullable=False)
    rate_pct: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    as_of: Mapped[date] = mapped_column(Date, nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)  # nyfed, fred, manual

    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("index_code", "as_of", name="uq_index_rates_code_date"),
        Index("idx_index_rates_code_date", "index_code", "as_of"),
    )


# =============================================================================
# PIPELINE OUTPUT TABLES
# =============================================================================


class FinancialSnapshot(Base):
    """Immutable deal snapshot. Recomputed as a new row, never updated."""

    __tablename__ = "financial_snapshots"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    deal_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    bank_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    period_id: Mapped[Optional[str]] = mapped_column(String(64))
    snapshot_json: Mapped[dict] = mapped_column(JSONType, nullable=False)
    snapshot_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("idx_financial_snapshots_deal", "deal_id", "bank_id", "created_at"),)


class DealSpread(Base):
    """Rendered spread per deal/type/owner. Holds the 'queued' placeholder until rendered."""

    __tablename__ = "deal_spreads"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    deal_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    bank_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    spread_type: Mapped[str] = mapped_column(String(50), nullable=False)
    spread_version: Mapped[int] = mapped_column(Integer, nullable=False)
    owner_type: Mapped[str] = mapped_column(String(20), nullable=False)  # DEAL, PERSONAL, GLOBAL
    owner_entity_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, default=SENTINEL_UUID)

    status: Mapped[str] = mapped_column(String(20), nullable=False)  # queued, generating, ready, error
    inputs_hash: Mapped[Optional[str]] = mapped_column(String(64))
    rendered_json: Mapped[Optional[dict]] = mapped_column(JSONType)
    error: Mapped[Optional[str]] = mapped_column(Text)
    error_code: Mapped[Optional[str]] = mapped_column(String(100))

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "deal_id",
            "bank_id",
            "spread_type",
            "spread_version",
            "owner_type",
            "owner_entity_id",
            name="uq_deal_spreads_identity",
        ),
    )


class SpreadJob(Base):
    """
    Background recomputation request for a deal.

    Lifecycle: QUEUED -> RUNNING -> SUCCEEDED | FAILED, or back to QUEUED when
    types were merged in during the run. The partial unique index allows at
    most one QUEUED/RUNNING job per (deal_id, bank_id). version_id makes
    every update a compare-and-swap on the row.
    """

    __tablename__ = "deal_spread_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    deal_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    bank_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    source_document_id: Mapped[Optional[UUID]] = mapped_column(Uuid)

    requested_spread_types: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JOB_QUEUED)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    next_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error: Mapped[Optional[str]] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column(JSONType, default=dict)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index(
            "uq_spread_jobs_active_deal",
            "deal_id",
            "bank_id",
            unique=True,
            postgresql_where=text("status IN ('QUEUED', 'RUNNING')"),
            sqlite_where=text("status IN ('QUEUED', 'RUNNING')"),
        ),
        Index("idx_spread_jobs_status_next_run", "status", "next_run_at"),
    )
    __mapper_args__ = {"version_id_col": version_id}


class PricingScenario(Base):
    """Priced loan structure for a deal. Regeneration replaces the full set."""

    __tablename__ = "pricing_scenarios"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    deal_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    bank_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    financial_snapshot_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("financial_snapshots.id"), nullable=False
    )
    loan_request_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("deal_loan_requests.id")
    )

    scenario_key: Mapped[str] = mapped_column(String(20), nullable=False)  # BASE, CONSERVATIVE, STRETCH, SBA_7A
    product_type: Mapped[str] = mapped_column(String(30), nullable=False)
    structure: Mapped[dict] = mapped_column(JSONType, nullable=False)
    metrics: Mapped[dict] = mapped_column(JSONType, nullable=False)
    policy_overlays: Mapped[list] = mapped_column(JSONType, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("deal_id", "bank_id", "scenario_key", name="uq_pricing_scenarios_key"),
    )


class PricingDecision(Base):
    """The single chosen pricing scenario for a deal."""

    __tablename__ = "pricing_decisions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    deal_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    bank_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    pricing_scenario_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("pricing_scenarios.id", ondelete="CASCADE"), nullable=False
    )
    financial_snapshot_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("financial_snapshots.id"), nullable=False
    )

    decision: Mapped[str] = mapped_column(String(20), nullable=False)  # APPROVED, REJECTED, RESTRUCTURE
    rationale: Mapped[str] = mapped_column(Text, nullable=False)
    risks: Mapped[list] = mapped_column(JSONType, default=list)
    mitigants: Mapped[list] = mapped_column(JSONType, default=list)
    decided_by: Mapped[str] = mapped_column(String(255), nullable=False)
    decided_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    terms: Mapped[Optional["PricingTerms"]] = relationship(
        back_populates="decision", cascade="all, delete-orphan", uselist=False
    )

    __table_args__ = (UniqueConstraint("deal_id", name="uq_pricing_decisions_deal"),)


class PricingTerms(Base):
    """Immutable loan terms extracted from the decided scenario."""

    __tablename__ = "pricing_terms"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    pricing_decision_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("pricing_decisions.id", ondelete="CASCADE"), nullable=False
    )

    interest_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 4))  # all-in, percent
    spread: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 4))  # percent
    index_code: Mapped[Optional[str]] = mapped_column(String(20))
    base_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 4))
    amort_years: Mapped[Optional[int]] = mapped_column(Integer)
    term_years: Mapped[Optional[int]] = mapped_column(Integer)
    loan_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(16, 2))
    fees: Mapped[Optional[dict]] = mapped_column(JSONType)
    prepayment: Mapped[Optional[dict]] = mapped_column(JSONType)
    guaranty: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    decision: Mapped["PricingDecision"] = relationship(back_populates="terms")


class CanonicalMemoNarrative(Base):
    """Template-rendered memo narrative blocks, keyed by a stable input hash."""

    __tablename__ = "canonical_memo_narratives"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    deal_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    bank_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    input_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    narratives: Mapped[dict] = mapped_column(JSONType, nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("deal_id", "bank_id", "input_hash", name="uq_memo_narratives_input"),
    )


# =============================================================================
# AUDIT TABLES
# =============================================================================


class SystemEvent(Base):
    """Operational event (warnings, waiting-on-facts diagnostics, lifecycle)."""

    __tablename__ = "system_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)  # info, warning, error, lifecycle
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    source_system: Mapped[str] = mapped_column(String(100), nullable=False)
    deal_id: Mapped[Optional[UUID]] = mapped_column(Uuid)
    bank_id: Mapped[Optional[UUID]] = mapped_column(Uuid)
    error_class: Mapped[Optional[str]] = mapped_column(String(30))  # transient, permanent
    error_code: Mapped[Optional[str]] = mapped_column(String(100))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("idx_system_events_deal", "deal_id", "created_at"),)


class PipelineLedgerEvent(Base):
    """Append-only pipeline ledger (pricing generated, decision made, cleared)."""

    __tablename__ = "pipeline_ledger_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    deal_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    bank_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    event_key: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # ok, error
    payload: Mapped[dict] = mapped_column(JSONType, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (Index("idx_pipeline_ledger_deal", "deal_id", "event_key"),)
