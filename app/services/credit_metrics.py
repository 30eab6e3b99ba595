"""
Credit Metrics Service (Snapshot Builder)

Turns a FinancialModel (periods of income / balance / cash-flow values) into
a CreditSnapshot: the selected analysis period, debt service and the core
credit ratios. Every ratio keeps its formula, inputs and diagnostics so the
number can be explained in the memo.

Missing inputs are never treated as zero. A ratio whose inputs are absent,
or whose denominator is zero, has value None with the reason recorded.
"""

from dataclasses import asdict, dataclass, field
from typing import Optional

from app.services.debt_service import DebtInstrument, compute_debt_portfolio_service


PERIOD_STRATEGIES = ("LATEST_FY", "LATEST_TTM", "LATEST_AVAILABLE", "EXPLICIT")


# =============================================================================
# MODEL
# =============================================================================


@dataclass(frozen=True)
class FinancialPeriod:
    """
    One reporting period.

    income keys: revenue, cogs, operating_expenses, depreciation, interest, net_income
    balance keys: cash, accounts_receivable, inventory, total_assets,
                  short_term_debt, long_term_debt, total_liabilities, equity
    cashflow keys: ebitda, capex, cfads
    """
    period_id: str
    period_end: str  # ISO date
    type: str  # FYE, TTM, YTD, INTERIM
    income: dict[str, float] = field(default_factory=dict)
    balance: dict[str, float] = field(default_factory=dict)
    cashflow: dict[str, float] = field(default_factory=dict)
    quality_flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class FinancialModel:
    deal_id: str
    periods: tuple[FinancialPeriod, ...] = ()


# =============================================================================
# RESULTS
# =============================================================================


@dataclass
class SelectedPeriod:
    period_id: str
    period_end: str
    type: str
    reason: str
    candidates: list[str] = field(default_factory=list)


@dataclass
class DebtServiceResult:
    total_debt_service: Optional[float]
    existing: Optional[float]
    proposed: Optional[float]
    source: str  # debt_engine, income.interest
    missing_components: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)


@dataclass
class MetricResult:
    value: Optional[float]
    formula: str
    inputs: dict[str, Optional[float]]
    missing_inputs: list[str] = field(default_factory=list)
    divide_by_zero: bool = False


@dataclass
class CreditSnapshot:
    """Deterministic credit snapshot for one deal and period."""
    deal_id: str
    period: SelectedPeriod
    debt_service: DebtServiceResult
    ratios: dict[str, MetricResult]

    def metric(self, name: str) -> Optional[float]:
        result = self.ratios.get(name)
        return result.value if result else None

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# PERIOD SELECTION
# =============================================================================


def select_analysis_period(
    model: FinancialModel,
    strategy: str = "LATEST_AVAILABLE",
    period_id: Optional[str] = None,
) -> Optional[SelectedPeriod]:
    """
    Choose the period to analyze.

    LATEST_FY: most recent FYE. LATEST_TTM: most recent TTM.
    LATEST_AVAILABLE: most recent of any type. EXPLICIT: exact period_id.
    Returns None when nothing qualifies.
    """
    if strategy not in PERIOD_STRATEGIES:
        raise ValueError(f"Unknown period strategy: {strategy}")

    ordered = sorted(model.periods, key=lambda p: p.period_end, reverse=True)
    candidates = [p.period_id for p in ordered]

    if strategy == "EXPLICIT":
        chosen = next((p for p in ordered if p.period_id == period_id), None)
        reason = f"Explicit period {period_id} requested"
    elif strategy == "LATEST_FY":
        chosen = next((p for p in ordered if p.type == "FYE"), None)
        reason = "Latest FYE period"
    elif strategy == "LATEST_TTM":
        chosen = next((p for p in ordered if p.type == "TTM"), None)
        reason = "Latest TTM period"
    else:
        chosen = ordered[0] if ordered else None
        reason = "Latest available period (most recent period end, any type)"

    if chosen is None:
        return None

    return SelectedPeriod(
        period_id=chosen.period_id,
        period_end=chosen.period_end,
        type=chosen.type,
        reason=reason,
        candidates=candidates,
    )


def get_period(model: FinancialModel, period_id: str) -> Optional[FinancialPeriod]:
    return next((p for p in model.periods if p.period_id == period_id), None)


# =============================================================================
# DEBT SERVICE
# =============================================================================


def compute_debt_service_for_period(
    model: FinancialModel,
    period_id: str,
    instruments: Optional[list[DebtInstrument]] = None,
) -> DebtServiceResult:
    """
    Debt service for a period.

    Uses the instrument portfolio when instruments are supplied; otherwise
    falls back to income.interest as a proxy for existing debt service.
    """
    if instruments:
        portfolio = compute_debt_portfolio_service(instruments)
        notes = [
            note
            for result in portfolio.instrument_breakdown.values()
            for note in result.notes
        ]
        missing = [f"instrument:{i}" for i in portfolio.invalid_instruments]
        return DebtServiceResult(
            total_debt_service=portfolio.total_annual_debt_service,
            existing=portfolio.existing,
            proposed=portfolio.proposed,
            source="debt_engine",
            missing_components=missing,
            notes=notes,
        )

    period = get_period(model, period_id)
    interest = period.income.get("interest") if period else None
    if interest is None:
        return DebtServiceResult(
            total_debt_service=None,
            existing=None,
            proposed=None,
            source="income.interest",
            missing_components=["income.interest"],
        )

    return DebtServiceResult(
        total_debt_service=interest,
        existing=interest,
        proposed=None,
        source="income.interest",
    )


# =============================================================================
# RATIOS
# =============================================================================


def _missing(inputs: dict[str, Optional[float]]) -> list[str]:
    return [name for name, value in inputs.items() if value is None]


def _ratio(formula: str, numerator_inputs: dict, denominator_inputs: dict) -> MetricResult:
    """Sum numerator inputs over summed denominator inputs."""
    inputs = {**numerator_inputs, **denominator_inputs}
    missing = _missing(inputs)
    if missing:
        return MetricResult(value=None, formula=formula, inputs=inputs, missing_inputs=missing)

    denominator = sum(denominator_inputs.values())
    if denominator == 0:
        return MetricResult(value=None, formula=formula, inputs=inputs, divide_by_zero=True)

    return MetricResult(
        value=sum(numerator_inputs.values()) / denominator,
        formula=formula,
        inputs=inputs,
    )


def compute_core_credit_metrics(
    model: FinancialModel,
    period_id: str,
    debt_service: DebtServiceResult,
) -> dict[str, MetricResult]:
    period = get_period(model, period_id)
    income = period.income if period else {}
    balance = period.balance if period else {}
    cashflow = period.cashflow if period else {}

    ebitda = cashflow.get("ebitda")
    revenue = income.get("revenue")
    cash = balance.get("cash")
    receivables = balance.get("accounts_receivable")
    inventory = balance.get("inventory")
    short_term_debt = balance.get("short_term_debt")

    metrics = {
        "dscr": _ratio(
            "EBITDA / TotalDebtService",
            {"ebitda": ebitda},
            {"total_debt_service": debt_service.total_debt_service},
        ),
        "leverage": _ratio(
            "(ShortTermDebt + LongTermDebt) / EBITDA",
            {"short_term_debt": short_term_debt, "long_term_debt": balance.get("long_term_debt")},
            {"ebitda": ebitda},
        ),
        "current_ratio": _ratio(
            "(Cash + AccountsReceivable + Inventory) / ShortTermDebt",
            {"cash": cash, "accounts_receivable": receivables, "inventory": inventory},
            {"short_term_debt": short_term_debt},
        ),
        "quick_ratio": _ratio(
            "(Cash + AccountsReceivable) / ShortTermDebt",
            {"cash": cash, "accounts_receivable": receivables},
            {"short_term_debt": short_term_debt},
        ),
        "ebitda_margin": _ratio("EBITDA / Revenue", {"ebitda": ebitda}, {"revenue": revenue}),
        "net_margin": _ratio(
            "NetIncome / Revenue", {"net_income": income.get("net_income")}, {"revenue": revenue}
        ),
    }

    wc_inputs = {
        "cash": cash,
        "accounts_receivable": receivables,
        "inventory": inventory,
        "short_term_debt": short_term_debt,
    }
    wc_missing = _missing(wc_inputs)
    metrics["working_capital"] = MetricResult(
        value=None if wc_missing else (cash + receivables + inventory) - short_term_debt,
        formula="(Cash + AccountsReceivable + Inventory) - ShortTermDebt",
        inputs=wc_inputs,
        missing_inputs=wc_missing,
    )

    return metrics


def compute_credit_snapshot(
    model: FinancialModel,
    strategy: str = "LATEST_AVAILABLE",
    period_id: Optional[str] = None,
    instruments: Optional[list[DebtInstrument]] = None,
) -> Optional[CreditSnapshot]:
    """Build a CreditSnapshot, or None when no usable period exists."""
    period = select_analysis_period(model, strategy, period_id)
    if period is None:
        return None

    debt_service = compute_debt_service_for_period(model, period.period_id, instruments)
    ratios = compute_core_credit_metrics(model, period.period_id, debt_service)

    return CreditSnapshot(
        deal_id=model.deal_id,
        period=period,
        debt_service=debt_service,
        ratios=ratios,
    )
