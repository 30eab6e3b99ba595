"""Initial schema - deal inputs, spread jobs, pricing and audit ledger

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid(name: str, nullable: bool = False, **kw) -> sa.Column:
    return sa.Column(name, postgresql.UUID(as_uuid=True), nullable=nullable, **kw)


def _jsonb(name: str, nullable: bool = True, default: str = None) -> sa.Column:
    kw = {"server_default": default} if default is not None else {}
    return sa.Column(name, postgresql.JSONB(astext_type=sa.Text()), nullable=nullable, **kw)


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.text("now()"),
    )


def upgrade() -> None:
    # ==========================================================================
    # INPUT TABLES
    # ==========================================================================

    # financial_facts
    op.create_table(
        "financial_facts",
        _uuid("id"),
        _uuid("deal_id"),
        _uuid("bank_id"),
        sa.Column("fact_type", sa.String(50), nullable=False),
        sa.Column("fact_key", sa.String(100), nullable=False),
        sa.Column("value_num", sa.Numeric(20, 4), nullable=True),
        sa.Column("period_end", sa.Date(), nullable=True),
        sa.Column("period_type", sa.String(10), nullable=True),
        sa.Column("owner_type", sa.String(20), nullable=False, server_default="DEAL"),
        _uuid("source_document_id", nullable=True),
        sa.Column("is_superseded", sa.Boolean(), nullable=False, server_default="false"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_financial_facts_deal", "financial_facts", ["deal_id", "bank_id"])
    op.create_index("idx_financial_facts_type", "financial_facts", ["deal_id", "bank_id", "fact_type"])

    # deal_rent_roll_rows
    op.create_table(
        "deal_rent_roll_rows",
        _uuid("id"),
        _uuid("deal_id"),
        _uuid("bank_id"),
        sa.Column("unit_id", sa.String(50), nullable=False),
        sa.Column("tenant_name", sa.String(255), nullable=True),
        sa.Column("occupancy_status", sa.String(20), nullable=True),
        sa.Column("sqft", sa.Integer(), nullable=True),
        sa.Column("monthly_rent", sa.Numeric(14, 2), nullable=True),
        sa.Column("as_of_date", sa.Date(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_rent_roll_rows_deal", "deal_rent_roll_rows", ["deal_id", "bank_id"])

    # deal_loan_requests
    op.create_table(
        "deal_loan_requests",
        _uuid("id"),
        _uuid("deal_id"),
        _uuid("bank_id"),
        sa.Column("product_type", sa.String(30), nullable=False, server_default="CONVENTIONAL"),
        sa.Column("requested_amount", sa.Numeric(16, 2), nullable=True),
        sa.Column("approved_amount", sa.Numeric(16, 2), nullable=True),
        sa.Column("requested_term_months", sa.Integer(), nullable=True),
        sa.Column("requested_amort_months", sa.Integer(), nullable=True),
        sa.Column("requested_interest_only_months", sa.Integer(), nullable=True),
        sa.Column("requested_rate_index", sa.String(20), nullable=True),
        _jsonb("use_of_proceeds", default="[]"),
        sa.Column("borrower_entity_type", sa.String(50), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_loan_requests_deal", "deal_loan_requests", ["deal_id", "created_at"])

    # bank_overlays
    op.create_table(
        "bank_overlays",
        _uuid("id"),
        _uuid("bank_id"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        _jsonb("overlay_json", default="{}"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("bank_id", "version", name="uq_bank_overlays_bank_version"),
    )

    # index_rates
    op.create_table(
        "index_rates",
        _uuid("id"),
        sa.Column("index_code", sa.String(20), nullable=False),
        sa.Column("rate_pct", sa.Numeric(8, 4), nullable=False),
        sa.Column("as_of", sa.Date(), nullable=False),
        sa.Column("source", sa.String(50), nullable=False),
        _timestamp("fetched_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("index_code", "as_of", name="uq_index_rates_code_date"),
    )
    op.create_index("idx_index_rates_code_date", "index_rates", ["index_code", "as_of"])

    # ==========================================================================
    # PIPELINE OUTPUT TABLES
    # ==========================================================================

    # financial_snapshots
    op.create_table(
        "financial_snapshots",
        _uuid("id"),
        _uuid("deal_id"),
        _uuid("bank_id"),
        sa.Column("period_id", sa.String(64), nullable=True),
        _jsonb("snapshot_json", nullable=False),
        sa.Column("snapshot_hash", sa.String(64), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_financial_snapshots_deal", "financial_snapshots", ["deal_id", "bank_id", "created_at"]
    )

    # deal_spreads
    op.create_table(
        "deal_spreads",
        _uuid("id"),
        _uuid("deal_id"),
        _uuid("bank_id"),
        sa.Column("spread_type", sa.String(50), nullable=False),
        sa.Column("spread_version", sa.Integer(), nullable=False),
        sa.Column("owner_type", sa.String(20), nullable=False),
        _uuid("owner_entity_id"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("inputs_hash", sa.String(64), nullable=True),
        _jsonb("rendered_json"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(100), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "deal_id",
            "bank_id",
            "spread_type",
            "spread_version",
            "owner_type",
            "owner_entity_id",
            name="uq_deal_spreads_identity",
        ),
    )

    # deal_spread_jobs
    op.create_table(
        "deal_spread_jobs",
        _uuid("id"),
        _uuid("deal_id"),
        _uuid("bank_id"),
        _uuid("source_document_id", nullable=True),
        _jsonb("requested_spread_types", nullable=False, default="[]"),
        sa.Column("status", sa.String(20), nullable=False, server_default="QUEUED"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _jsonb("meta", default="{}"),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    # At most one active job per deal+bank
    op.create_index(
        "uq_spread_jobs_active_deal",
        "deal_spread_jobs",
        ["deal_id", "bank_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('QUEUED', 'RUNNING')"),
    )
    op.create_index("idx_spread_jobs_status_next_run", "deal_spread_jobs", ["status", "next_run_at"])

    # pricing_scenarios
    op.create_table(
        "pricing_scenarios",
        _uuid("id"),
        _uuid("deal_id"),
        _uuid("bank_id"),
        _uuid("financial_snapshot_id"),
        _uuid("loan_request_id", nullable=True),
        sa.Column("scenario_key", sa.String(20), nullable=False),
        sa.Column("product_type", sa.String(30), nullable=False),
        _jsonb("structure", nullable=False),
        _jsonb("metrics", nullable=False),
        _jsonb("policy_overlays", default="[]"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["financial_snapshot_id"], ["financial_snapshots.id"]),
        sa.ForeignKeyConstraint(["loan_request_id"], ["deal_loan_requests.id"]),
        sa.UniqueConstraint("deal_id", "bank_id", "scenario_key", name="uq_pricing_scenarios_key"),
    )

    # pricing_decisions
    op.create_table(
        "pricing_decisions",
        _uuid("id"),
        _uuid("deal_id"),
        _uuid("bank_id"),
        _uuid("pricing_scenario_id"),
        _uuid("financial_snapshot_id"),
        sa.Column("decision", sa.String(20), nullable=False),
        sa.Column("rationale", sa.Text(), nullable=False),
        _jsonb("risks", default="[]"),
        _jsonb("mitigants", default="[]"),
        sa.Column("decided_by", sa.String(255), nullable=False),
        _timestamp("decided_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["pricing_scenario_id"], ["pricing_scenarios.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["financial_snapshot_id"], ["financial_snapshots.id"]),
        sa.UniqueConstraint("deal_id", name="uq_pricing_decisions_deal"),
    )

    # pricing_terms
    op.create_table(
        "pricing_terms",
        _uuid("id"),
        _uuid("pricing_decision_id"),
        sa.Column("interest_rate", sa.Numeric(8, 4), nullable=True),
        sa.Column("spread", sa.Numeric(8, 4), nullable=True),
        sa.Column("index_code", sa.String(20), nullable=True),
        sa.Column("base_rate", sa.Numeric(8, 4), nullable=True),
        sa.Column("amort_years", sa.Integer(), nullable=True),
        sa.Column("term_years", sa.Integer(), nullable=True),
        sa.Column("loan_amount", sa.Numeric(16, 2), nullable=True),
        _jsonb("fees"),
        _jsonb("prepayment"),
        sa.Column("guaranty", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["pricing_decision_id"], ["pricing_decisions.id"], ondelete="CASCADE"),
    )

    # canonical_memo_narratives
    op.create_table(
        "canonical_memo_narratives",
        _uuid("id"),
        _uuid("deal_id"),
        _uuid("bank_id"),
        sa.Column("input_hash", sa.String(64), nullable=False),
        _jsonb("narratives", nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        _timestamp("generated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("deal_id", "bank_id", "input_hash", name="uq_memo_narratives_input"),
    )

    # ==========================================================================
    # AUDIT TABLES
    # ==========================================================================

    # system_events
    op.create_table(
        "system_events",
        _uuid("id"),
        sa.Column("event_type", sa.String(30), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("source_system", sa.String(100), nullable=False),
        _uuid("deal_id", nullable=True),
        _uuid("bank_id", nullable=True),
        sa.Column("error_class", sa.String(30), nullable=True),
        sa.Column("error_code", sa.String(100), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _jsonb("payload", default="{}"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_system_events_deal", "system_events", ["deal_id", "created_at"])

    # pipeline_ledger_events
    op.create_table(
        "pipeline_ledger_events",
        _uuid("id"),
        _uuid("deal_id"),
        _uuid("bank_id"),
        sa.Column("event_key", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        _jsonb("payload", default="{}"),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_pipeline_ledger_deal", "pipeline_ledger_events", ["deal_id", "event_key"])


def downgrade() -> None:
    # Drop audit tables
    op.drop_table("pipeline_ledger_events")
    op.drop_table("system_events")

    # Drop pipeline tables (in reverse order of dependencies)
    op.drop_table("canonical_memo_narratives")
    op.drop_table("pricing_terms")
    op.drop_table("pricing_decisions")
    op.drop_table("pricing_scenarios")
    op.drop_table("deal_spread_jobs")
    op.drop_table("deal_spreads")
    op.drop_table("financial_snapshots")

    # Drop input tables
    op.drop_table("index_rates")
    op.drop_table("bank_overlays")
    op.drop_table("deal_loan_requests")
    op.drop_table("deal_rent_roll_rows")
    op.drop_table("financial_facts")
