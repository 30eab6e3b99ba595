"""
Spread Templates

Registry of spread types the scheduler accepts, with the version each
renders at and the readiness prerequisites checked before a job is
enqueued.
"""

from dataclasses import dataclass, field
from typing import Optional

from app.services.financial_facts import VisibleFacts


@dataclass(frozen=True)
class ReadinessPrereq:
    fact_types: tuple[str, ...] = ()  # satisfied when ANY listed type is visible
    fact_keys: tuple[str, ...] = ()  # each must be visible
    min_fact_count: Optional[int] = None
    tables: tuple[str, ...] = ()  # ancillary tables that must hold rows
    note: Optional[str] = None


@dataclass(frozen=True)
class SpreadTemplate:
    spread_type: str
    title: str
    version: int
    priority: int
    prereq: ReadinessPrereq = field(default_factory=ReadinessPrereq)


@dataclass
class PrereqResult:
    ready: bool
    missing: list[str] = field(default_factory=list)


SPREAD_TEMPLATES: dict[str, SpreadTemplate] = {
    t.spread_type: t
    for t in (
        SpreadTemplate(
            "T12",
            "Operating Performance",
            version=3,
            priority=10,
            prereq=ReadinessPrereq(
                fact_types=("INCOME_STATEMENT", "TAX_RETURN"),
                note="Needs operating performance facts from business tax returns or income statements",
            ),
        ),
        SpreadTemplate(
            "BALANCE_SHEET",
            "Balance Sheet",
            version=1,
            priority=20,
            prereq=ReadinessPrereq(
                fact_types=("BALANCE_SHEET",),
                note="Needs balance sheet facts",
            ),
        ),
        SpreadTemplate(
            "RENT_ROLL",
            "Rent Roll",
            version=3,
            priority=30,
            prereq=ReadinessPrereq(
                tables=("rent_roll_rows",),
                note="Needs at least one extracted rent roll row",
            ),
        ),
        SpreadTemplate(
            "PERSONAL_FINANCIAL_STATEMENT",
            "Personal Financial Statement",
            version=1,
            priority=40,
            prereq=ReadinessPrereq(
                fact_types=("PERSONAL_FINANCIAL_STATEMENT",),
                note="Needs a personal financial statement for a guarantor",
            ),
        ),
        SpreadTemplate(
            "PERSONAL_INCOME",
            "Personal Income",
            version=1,
            priority=50,
            prereq=ReadinessPrereq(
                fact_types=("PERSONAL_INCOME", "PERSONAL_TAX_RETURN"),
                note="Needs personal tax return or income facts",
            ),
        ),
        SpreadTemplate(
            "GLOBAL_CASH_FLOW",
            "Global Cash Flow",
            version=1,
            priority=60,
            prereq=ReadinessPrereq(
                fact_types=("INCOME_STATEMENT", "TAX_RETURN"),
                min_fact_count=1,
                note="Needs business cash flow facts before global cash flow can be combined",
            ),
        ),
    )
}

ALL_SPREAD_TYPES = tuple(SPREAD_TEMPLATES)


def get_spread_template(spread_type: str) -> Optional[SpreadTemplate]:
    return SPREAD_TEMPLATES.get(spread_type)


def is_valid_spread_type(spread_type: str) -> bool:
    return spread_type in SPREAD_TEMPLATES


def evaluate_prereq(
    prereq: ReadinessPrereq,
    visible_facts: VisibleFacts,
    rent_roll_row_count: int = 0,
) -> PrereqResult:
    """Check a template's prerequisites against the facts currently visible for the deal."""
    missing: list[str] = []

    if prereq.fact_types and not any(visible_facts.by_fact_type.get(t) for t in prereq.fact_types):
        missing.extend(f"fact_type:{t}" for t in prereq.fact_types)

    for key in prereq.fact_keys:
        if key not in visible_facts.fact_keys:
            missing.append(f"fact_key:{key}")

    if prereq.min_fact_count is not None and visible_facts.total < prereq.min_fact_count:
        missing.append(f"min_facts:{prereq.min_fact_count}")

    table_counts = {"rent_roll_rows": rent_roll_row_count}
    for table in prereq.tables:
        if table_counts.get(table, 0) < 1:
            missing.append(f"table:{table}")

    return PrereqResult(ready=not missing, missing=missing)


def resolve_owner_type(spread_type: str, owner_type: Optional[str] = None) -> str:
    if spread_type.startswith("PERSONAL_"):
        return "PERSONAL"
    if spread_type == "GLOBAL_CASH_FLOW":
        return "GLOBAL"
    return owner_type or "DEAL"
