"""Compensation subsystem — recipient registry, period ledger, disbursement."""

from stipend.compensation.engine import DisbursementEngine
from stipend.compensation.ledger import PeriodLedger
from stipend.compensation.payment_rail import (
    PaymentRail,
    StablecoinVault,
    TransactionalRail,
)
from stipend.compensation.registry import RecipientRegistry
from stipend.compensation.reporting import ReportingView

__all__ = [
    "DisbursementEngine",
    "PaymentRail",
    "PeriodLedger",
    "RecipientRegistry",
    "ReportingView",
    "StablecoinVault",
    "TransactionalRail",
]
