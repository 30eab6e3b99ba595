"""
Debt Service Engine

Amortization math for loan instruments and portfolios:
- Level-payment annuity (PMT) with monthly, quarterly or annual payments
- Interest-only and balloon structures (noted, post-IO payment used)
- Portfolio aggregation split by existing vs proposed debt

Rates on DebtInstrument are annual decimals (0.065 = 6.5%). The pricing
helpers at the bottom take percentages (6.5) since that is how index rates
and all-in coupons are quoted.
"""

from dataclasses import dataclass, field
from typing import Optional


PERIODS_PER_YEAR = {
    "monthly": 12,
    "quarterly": 4,
    "annual": 1,
}


@dataclass(frozen=True)
class DebtInstrument:
    """A single existing or proposed debt obligation."""
    id: str
    principal: float
    rate: float  # annual, decimal
    amortization_months: int
    source: str = "existing"  # existing, proposed
    interest_only_months: int = 0
    term_months: Optional[int] = None
    balloon: bool = False
    payment_frequency: str = "monthly"


@dataclass
class InstrumentDebtService:
    """Annual debt service for one instrument."""
    instrument_id: str
    source: str
    periodic_debt_service: Optional[float]
    annual_debt_service: Optional[float]
    principal: Optional[float] = None  # first amortizing year
    interest: Optional[float] = None
    notes: list[str] = field(default_factory=list)
    unsupported_structure: bool = False


@dataclass
class DebtPortfolioService:
    """Aggregated debt service across instruments."""
    total_annual_debt_service: Optional[float]
    existing: Optional[float]
    proposed: Optional[float]
    instrument_breakdown: dict[str, InstrumentDebtService] = field(default_factory=dict)
    invalid_instruments: list[str] = field(default_factory=list)


def level_payment(principal: float, periodic_rate: float, n_payments: int) -> Optional[float]:
    """Standard annuity payment. Straight-line principal at zero rate."""
    if n_payments <= 0:
        return None
    if periodic_rate == 0:
        return principal / n_payments
    factor = (1 + periodic_rate) ** n_payments
    return principal * periodic_rate * factor / (factor - 1)


def compute_annual_debt_service(instrument: DebtInstrument) -> InstrumentDebtService:
    """
    Compute annual debt service for an instrument.

    Negative principal, a non-positive amortization, a negative rate or an
    unknown payment frequency is an unsupported structure: no value is
    returned rather than a guess.
    """
    notes: list[str] = []

    periods_per_year = PERIODS_PER_YEAR.get(instrument.payment_frequency)
    if (
        periods_per_year is None
        or instrument.principal < 0
        or instrument.rate < 0
        or instrument.amortization_months <= 0
    ):
        return InstrumentDebtService(
            instrument_id=instrument.id,
            source=instrument.source,
            periodic_debt_service=None,
            annual_debt_service=None,
            notes=[f"Unsupported structure for instrument {instrument.id}"],
            unsupported_structure=True,
        )

    if instrument.principal == 0:
        return InstrumentDebtService(
            instrument_id=instrument.id,
            source=instrument.source,
            periodic_debt_service=0.0,
            annual_debt_service=0.0,
            principal=0.0,
            interest=0.0,
        )

    periodic_rate = instrument.rate / periods_per_year
    n_payments = round(instrument.amortization_months * periods_per_year / 12)
    payment = level_payment(instrument.principal, periodic_rate, n_payments)
    if payment is None:
        return InstrumentDebtService(
            instrument_id=instrument.id,
            source=instrument.source,
            periodic_debt_service=None,
            annual_debt_service=None,
            notes=[f"Amortization shorter than one payment period for {instrument.id}"],
            unsupported_structure=True,
        )

    if instrument.interest_only_months > 0:
        io_payment = instrument.principal * periodic_rate
        notes.append(
            f"IO period of {instrument.interest_only_months} months "
            f"(IO payment {io_payment:,.2f}); debt service reflects post-IO amortizing payment"
        )

    if instrument.balloon:
        term = instrument.term_months
        notes.append(
            f"Balloon at month {term}; balloon payment excluded from annual debt service"
            if term
            else "Balloon structure; balloon payment excluded from annual debt service"
        )

    # First amortizing year split into principal and interest
    balance = instrument.principal
    principal_paid = 0.0
    interest_paid = 0.0
    for _ in range(min(periods_per_year, n_payments)):
        interest = balance * periodic_rate
        principal_portion = payment - interest
        interest_paid += interest
        principal_paid += principal_portion
        balance -= principal_portion

    annual = payment * min(periods_per_year, n_payments)

    return InstrumentDebtService(
        instrument_id=instrument.id,
        source=instrument.source,
        periodic_debt_service=payment,
        annual_debt_service=annual,
        principal=principal_paid,
        interest=interest_paid,
        notes=notes,
    )


def compute_debt_portfolio_service(instruments: list[DebtInstrument]) -> DebtPortfolioService:
    """Sum annual debt service across valid instruments, tracking invalid ones."""
    breakdown: dict[str, InstrumentDebtService] = {}
    invalid: list[str] = []
    totals = {"existing": None, "proposed": None}
    total: Optional[float] = None

    for instrument in instruments:
        result = compute_annual_debt_service(instrument)
        breakdown[instrument.id] = result
        if result.annual_debt_service is None:
            invalid.append(instrument.id)
            continue

        total = (total or 0.0) + result.annual_debt_service
        bucket = "proposed" if instrument.source == "proposed" else "existing"
        totals[bucket] = (totals[bucket] or 0.0) + result.annual_debt_service

    return DebtPortfolioService(
        total_annual_debt_service=total,
        existing=totals["existing"],
        proposed=totals["proposed"],
        instrument_breakdown=breakdown,
        invalid_instruments=invalid,
    )


# =============================================================================
# PRICING HELPERS (percent rates)
# =============================================================================


def monthly_payment(principal: float, annual_rate_pct: float, n_months: int) -> Optional[float]:
    """Monthly level payment for a loan quoted at an annual percentage rate."""
    return level_payment(principal, annual_rate_pct / 100 / 12, n_months)


def annual_debt_service(principal: float, annual_rate_pct: float, amort_months: int) -> Optional[float]:
    """Twelve amortizing monthly payments."""
    payment = monthly_payment(principal, annual_rate_pct, amort_months)
    if payment is None:
        return None
    return payment * 12
