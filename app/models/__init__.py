"""Database models for the credit decision pipeline"""

from .schema import (
    ACTIVE_JOB_STATUSES,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    JOB_SUCCEEDED,
    SENTINEL_UUID,
    BankOverlay,
    Base,
    CanonicalMemoNarrative,
    DealSpread,
    FinancialFact,
    FinancialSnapshot,
    IndexRate,
    LoanRequest,
    PipelineLedgerEvent,
    PricingDecision,
    PricingScenario,
    PricingTerms,
    RentRollRow,
    SpreadJob,
    SystemEvent,
)

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "JOB_FAILED",
    "JOB_QUEUED",
    "JOB_RUNNING",
    "JOB_SUCCEEDED",
    "SENTINEL_UUID",
    "BankOverlay",
    "Base",
    "CanonicalMemoNarrative",
    "DealSpread",
    "FinancialFact",
    "FinancialSnapshot",
    "IndexRate",
    "LoanRequest",
    "PipelineLedgerEvent",
    "PricingDecision",
    "PricingScenario",
    "PricingTerms",
    "RentRollRow",
    "SpreadJob",
    "SystemEvent",
]
