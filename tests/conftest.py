"""
Pytest configuration and fixtures for credit pipeline tests.

Fixtures provide:
- Sample financial models (healthy, borderline, weak)
- SQLite-backed async sessions with the full schema
- A recording event sink and a static index-rate source
"""

import os
import sys
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Never point tests at a real database or cache
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.pop("REDIS_URL", None)

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.models import Base, FinancialFact, FinancialSnapshot, LoanRequest
from app.services.credit_metrics import FinancialModel, FinancialPeriod
from app.services.index_rates import IndexRateQuote, RateFeedUnavailable


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: pure computation tests, no database")
    config.addinivalue_line("markers", "integration: tests against a SQLite database")
    config.addinivalue_line("markers", "api: HTTP contract tests against the in-process app")


# =============================================================================
# Sample Data Fixtures
# =============================================================================

def make_period(
    ebitda,
    interest=400_000,
    period_end="2024-12-31",
    period_type="FYE",
    short_term_debt=500_000,
    long_term_debt=1_500_000,
    revenue=5_000_000,
    net_income=400_000,
    cash=300_000,
    accounts_receivable=400_000,
    inventory=200_000,
):
    """Build a single FinancialPeriod. Pass None to leave a value out."""
    def present(values):
        return {k: v for k, v in values.items() if v is not None}

    return FinancialPeriod(
        period_id=f"{period_type.lower()}-{period_end}",
        period_end=period_end,
        type=period_type,
        income=present({"revenue": revenue, "interest": interest, "net_income": net_income}),
        balance=present({
            "cash": cash,
            "accounts_receivable": accounts_receivable,
            "inventory": inventory,
            "short_term_debt": short_term_debt,
            "long_term_debt": long_term_debt,
        }),
        cashflow=present({"ebitda": ebitda}),
    )


@pytest.fixture
def healthy_model():
    """DSCR 2.5x, leverage 2.0x: tier A for SBA under every stress scenario."""
    return FinancialModel(deal_id="deal-healthy", periods=(make_period(ebitda=1_000_000),))


@pytest.fixture
def borderline_model():
    """DSCR 1.20x, leverage 4.17x: minor breaches (tier B), moderate once EBITDA drops 10%."""
    return FinancialModel(deal_id="deal-borderline", periods=(make_period(ebitda=480_000),))


@pytest.fixture
def weak_model():
    """DSCR 0.625x, leverage 8.0x: severe breaches (tier D)."""
    return FinancialModel(deal_id="deal-weak", periods=(make_period(ebitda=250_000),))


@pytest.fixture
def moderate_model():
    """DSCR 1.0x, leverage 5.0x: moderate breaches (tier C)."""
    return FinancialModel(deal_id="deal-moderate", periods=(make_period(ebitda=400_000),))


@pytest.fixture
def pricing_snapshot():
    """Deal snapshot JSON as persisted in financial_snapshots."""
    return {
        "dscr": 1.5,
        "cash_flow_available": 300_000.0,
        "noi_ttm": 280_000.0,
        "collateral_gross_value": 1_250_000.0,
        "annual_debt_service": 200_000.0,
    }


@pytest.fixture
def sofr_rates():
    return {
        "SOFR": IndexRateQuote(code="SOFR", rate_pct=5.0, as_of="2026-10-16", source="nyfed"),
        "PRIME": IndexRateQuote(code="PRIME", rate_pct=8.5, as_of="2026-10-16", source="fred"),
    }


# =============================================================================
# Test Doubles
# =============================================================================

class RecordingEventSink:
    """EventSink that keeps every event in memory."""

    def __init__(self):
        self.system_events = []
        self.ledger_events = []

    async def write_system_event(self, **kwargs):
        self.system_events.append(kwargs)

    async def log_pipeline_ledger(self, **kwargs):
        self.ledger_events.append(kwargs)

    def codes(self):
        return [e.get("error_code") for e in self.system_events]

    def ledger_keys(self):
        return [e["event_key"] for e in self.ledger_events]


class StaticRateSource:
    """IndexRateSource returning fixed quotes, or failing like a dead feed."""

    def __init__(self, rates=None, fail=False):
        self.rates = rates or {}
        self.fail = fail

    async def get_latest_index_rates(self):
        if self.fail:
            raise RateFeedUnavailable("feed unavailable")
        return self.rates


@pytest.fixture
def sink():
    return RecordingEventSink()


@pytest.fixture
def rate_source(sofr_rates):
    return StaticRateSource(sofr_rates)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def session_maker(tmp_path):
    """Fresh SQLite database file with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def deal_id():
    return uuid4()


@pytest.fixture
def bank_id():
    return uuid4()


# Facts for a healthy FYE 2024 period (DSCR 2.5x, leverage 2.0x)
HEALTHY_FACTS = {
    "INCOME_STATEMENT": {
        "REVENUE": 5_000_000,
        "INTEREST_EXPENSE": 400_000,
        "NET_INCOME": 400_000,
        "EBITDA": 1_000_000,
    },
    "BALANCE_SHEET": {
        "CASH": 300_000,
        "ACCOUNTS_RECEIVABLE": 400_000,
        "INVENTORY": 200_000,
        "SHORT_TERM_DEBT": 500_000,
        "LONG_TERM_DEBT": 1_500_000,
    },
}


async def add_facts(session, deal_id, bank_id, facts_by_type=None, period_end=date(2024, 12, 31)):
    """Insert facts grouped by fact_type and commit."""
    for fact_type, values in (facts_by_type or HEALTHY_FACTS).items():
        for key, value in values.items():
            session.add(FinancialFact(
                deal_id=deal_id,
                bank_id=bank_id,
                fact_type=fact_type,
                fact_key=key,
                value_num=Decimal(str(value)),
                period_end=period_end,
                period_type="FYE",
                owner_type="DEAL",
                is_superseded=False,
            ))
    await session.commit()


async def add_snapshot(session, deal_id, bank_id, snapshot_json):
    row = FinancialSnapshot(
        deal_id=deal_id,
        bank_id=bank_id,
        period_id="fye-2024-12-31",
        snapshot_json=snapshot_json,
        snapshot_hash="0" * 64,
    )
    session.add(row)
    await session.commit()
    return row


async def add_loan_request(session, deal_id, bank_id, **overrides):
    values = dict(
        product_type="CONVENTIONAL",
        requested_amount=Decimal("1000000"),
        requested_term_months=120,
        requested_amort_months=300,
        requested_rate_index="SOFR",
        use_of_proceeds=["EQUIPMENT_PURCHASE"],
        borrower_entity_type="LLC",
    )
    values.update(overrides)
    row = LoanRequest(deal_id=deal_id, bank_id=bank_id, **values)
    session.add(row)
    await session.commit()
    return row
