"""
Financial Facts

Reads the normalized facts visible for a deal and maps them onto the
FinancialModel consumed by the credit-metrics engine. Also builds the
deal-level snapshot JSON persisted in financial_snapshots.
"""

import hashlib
import json
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import FinancialFact, RentRollRow
from app.services.credit_metrics import CreditSnapshot, FinancialModel, FinancialPeriod


SNAPSHOT_VERSION = 1

# fact_key -> (model group, model field)
FACT_KEY_MAP = {
    "REVENUE": ("income", "revenue"),
    "TOTAL_REVENUE": ("income", "revenue"),
    "COGS": ("income", "cogs"),
    "OPERATING_EXPENSES": ("income", "operating_expenses"),
    "DEPRECIATION": ("income", "depreciation"),
    "INTEREST_EXPENSE": ("income", "interest"),
    "NET_INCOME": ("income", "net_income"),
    "CASH": ("balance", "cash"),
    "ACCOUNTS_RECEIVABLE": ("balance", "accounts_receivable"),
    "INVENTORY": ("balance", "inventory"),
    "TOTAL_ASSETS": ("balance", "total_assets"),
    "SHORT_TERM_DEBT": ("balance", "short_term_debt"),
    "LONG_TERM_DEBT": ("balance", "long_term_debt"),
    "TOTAL_LIABILITIES": ("balance", "total_liabilities"),
    "TOTAL_EQUITY": ("balance", "equity"),
    "EBITDA": ("cashflow", "ebitda"),
    "CAPEX": ("cashflow", "capex"),
    "CFADS": ("cashflow", "cfads"),
}

# Lower wins when two fact types report the same key for the same period
FACT_TYPE_PRIORITY = {
    "INCOME_STATEMENT": 0,
    "BALANCE_SHEET": 0,
    "TAX_RETURN": 1,
}


@dataclass
class VisibleFacts:
    """Facts currently visible for a deal (not superseded)."""
    facts: list[FinancialFact] = field(default_factory=list)
    by_fact_type: dict[str, int] = field(default_factory=dict)
    fact_keys: set[str] = field(default_factory=set)

    @property
    def total(self) -> int:
        return len(self.facts)


async def get_visible_facts(db: AsyncSession, deal_id: UUID, bank_id: UUID) -> VisibleFacts:
    result = await db.execute(
        select(FinancialFact)
        .where(
            FinancialFact.deal_id == deal_id,
            FinancialFact.bank_id == bank_id,
            FinancialFact.is_superseded.is_(False),
        )
        .order_by(FinancialFact.created_at)
    )
    facts = list(result.scalars().all())
    return VisibleFacts(
        facts=facts,
        by_fact_type=dict(Counter(f.fact_type for f in facts)),
        fact_keys={f.fact_key for f in facts},
    )


async def count_rent_roll_rows(db: AsyncSession, deal_id: UUID, bank_id: UUID) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(RentRollRow)
        .where(RentRollRow.deal_id == deal_id, RentRollRow.bank_id == bank_id)
    )
    return result.scalar_one()


def _period_id(period_type: str, period_end: str) -> str:
    return f"{period_type.lower()}-{period_end}"


def build_financial_model(deal_id: str, facts: list[FinancialFact]) -> FinancialModel:
    """Group deal-level facts by period into a FinancialModel."""
    periods: dict[tuple[str, str], dict[str, dict[str, float]]] = {}

    ordered = sorted(
        (f for f in facts if f.owner_type == "DEAL" and f.period_end is not None and f.value_num is not None),
        key=lambda f: FACT_TYPE_PRIORITY.get(f.fact_type, 2),
    )
    for fact in ordered:
        target = FACT_KEY_MAP.get(fact.fact_key)
        if target is None:
            continue
        group, name = target
        key = (fact.period_end.isoformat(), fact.period_type or "FYE")
        groups = periods.setdefault(key, {"income": {}, "balance": {}, "cashflow": {}})
        groups[group].setdefault(name, float(fact.value_num))

    return FinancialModel(
        deal_id=str(deal_id),
        periods=tuple(
            FinancialPeriod(
                period_id=_period_id(period_type, period_end),
                period_end=period_end,
                type=period_type,
                income=groups["income"],
                balance=groups["balance"],
                cashflow=groups["cashflow"],
            )
            for (period_end, period_type), groups in sorted(periods.items())
        ),
    )


def latest_fact_value(facts: list[FinancialFact], fact_keys: tuple[str, ...]) -> Optional[float]:
    """Most recent value among the given keys (by period end, then insertion)."""
    matches = [f for f in facts if f.fact_key in fact_keys and f.value_num is not None]
    if not matches:
        return None
    latest = max(matches, key=lambda f: f.period_end.isoformat() if f.period_end else "")
    return float(latest.value_num)


def build_snapshot_payload(
    snapshot: Optional[CreditSnapshot],
    facts: list[FinancialFact],
) -> dict[str, Any]:
    """Deal-level snapshot JSON consumed by pricing and decisioning."""
    cash_flow = None
    if snapshot is not None:
        cash_flow = snapshot.ratios["dscr"].inputs.get("ebitda")

    return {
        "version": SNAPSHOT_VERSION,
        "period_id": snapshot.period.period_id if snapshot else None,
        "credit_snapshot": snapshot.to_dict() if snapshot else None,
        "dscr": snapshot.metric("dscr") if snapshot else None,
        "annual_debt_service": snapshot.debt_service.total_debt_service if snapshot else None,
        "cash_flow_available": cash_flow,
        "noi_ttm": latest_fact_value(facts, ("NOI", "NET_OPERATING_INCOME")),
        "collateral_gross_value": latest_fact_value(facts, ("COLLATERAL_GROSS_VALUE", "APPRAISED_VALUE")),
        "gcf_global_cash_flow": latest_fact_value(facts, ("GCF_GLOBAL_CASH_FLOW", "GLOBAL_CASH_FLOW")),
    }


def snapshot_hash(payload: dict[str, Any]) -> str:
    content = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(content.encode()).hexdigest()
