"""Core data models for the stipend engine."""

from stipend.models.stipend import (
    ActiveRecipient,
    FundingStatus,
    HistoryEntry,
    PaymentPeriod,
    PaymentRecord,
    PeriodSnapshot,
    PeriodStatus,
    Recipient,
)

__all__ = [
    "ActiveRecipient",
    "FundingStatus",
    "HistoryEntry",
    "PaymentPeriod",
    "PaymentRecord",
    "PeriodSnapshot",
    "PeriodStatus",
    "Recipient",
]
