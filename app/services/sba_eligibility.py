"""
SBA 7(a) Eligibility

Rule-based screen used by the pricing engine to decide whether an SBA 7(a)
alternative structure should be offered. Returns one of:

    eligible      no rule fired
    conditional   eligible subject to further review (thin coverage, missing data)
    ineligible    a hard rule fired (program maximum, ineligible business or use)
"""

from dataclasses import dataclass, field
from typing import Any, Optional


SBA_7A_MAX_LOAN = 5_000_000
SBA_MIN_DSCR = 1.15

INELIGIBLE_ENTITY_TYPES = {
    "NONPROFIT",
    "PASSIVE_REAL_ESTATE",
    "LENDING",
    "GAMBLING",
    "SPECULATIVE",
}

INELIGIBLE_USES = {
    "PASSIVE_INVESTMENT",
    "SPECULATION",
    "REFINANCE_SBA_GUARANTEED",
    "PAYMENT_TO_ASSOCIATES",
    "LENDING",
}


@dataclass
class SbaEligibility:
    status: str  # eligible, conditional, ineligible
    reasons: list[str] = field(default_factory=list)


def snapshot_number(snapshot: dict[str, Any], key: str) -> Optional[float]:
    """Read a snapshot metric stored either as a number or as {"value_num": n}."""
    value = snapshot.get(key)
    if isinstance(value, dict):
        value = value.get("value_num")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def evaluate_sba_eligibility(
    snapshot: dict[str, Any],
    loan_amount: Optional[float] = None,
    use_of_proceeds: Optional[list[str]] = None,
    borrower_entity_type: Optional[str] = None,
    loan_product_type: Optional[str] = None,
) -> SbaEligibility:
    hard: list[str] = []
    soft: list[str] = []

    if loan_amount is not None and loan_amount > SBA_7A_MAX_LOAN:
        hard.append(f"Loan amount ${loan_amount:,.0f} exceeds SBA 7(a) maximum of ${SBA_7A_MAX_LOAN:,.0f}")

    if borrower_entity_type and borrower_entity_type.upper() in INELIGIBLE_ENTITY_TYPES:
        hard.append(f"Business type {borrower_entity_type} is ineligible under SOP 50 10")

    for use in use_of_proceeds or []:
        if use.upper() in INELIGIBLE_USES:
            hard.append(f"Use of proceeds '{use}' is ineligible under SOP 50 10")

    dscr = snapshot_number(snapshot, "dscr")
    cash_flow = snapshot_number(snapshot, "cash_flow_available")
    if dscr is None:
        soft.append("DSCR unavailable; repayment ability must be documented")
    elif dscr < SBA_MIN_DSCR:
        soft.append(f"DSCR {dscr:.2f}x below SBA minimum {SBA_MIN_DSCR:.2f}x")
    if cash_flow is None:
        soft.append("Cash flow available for debt service not established")

    if loan_product_type and loan_product_type.startswith("SBA") and not hard and not soft:
        return SbaEligibility(status="eligible", reasons=["Requested as SBA product; no eligibility rule fired"])

    if hard:
        return SbaEligibility(status="ineligible", reasons=hard + soft)
    if soft:
        return SbaEligibility(status="conditional", reasons=soft)
    return SbaEligibility(status="eligible", reasons=[])
