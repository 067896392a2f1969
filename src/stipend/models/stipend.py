"""Stipend models — recipients, payment periods, and payment records.

Amounts are integers in the stablecoin's base units (e.g. 4000000000 is
4,000.00 of a 6-decimal token). No floats in finance, and no Decimal
either: the rail moves whole base units only.

Invariants carried by these models:
- A period's paid-bits only ever flip False → True.
- A period's settlement flag only ever flips False → True.
- A recipient's history survives deactivation (soft delete).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Tuple


@dataclass
class Recipient:
    """A compensation recipient.

    Mutable — amount and role change on update, is_active flips on
    remove and re-add.
    """
    recipient_id: str
    monthly_amount: int
    role: str
    is_active: bool = True


@dataclass
class PaymentPeriod:
    """A disbursement cycle and its per-recipient paid state.

    paid_bits and paid_amounts are written together, and only by the
    disbursement engine.
    """
    period_id: int
    due_utc: datetime
    paid: bool = False
    paid_bits: Dict[str, bool] = field(default_factory=dict)
    paid_amounts: Dict[str, int] = field(default_factory=dict)

    def is_paid_to(self, recipient_id: str) -> bool:
        return self.paid_bits.get(recipient_id, False)


@dataclass(frozen=True)
class PeriodSnapshot:
    """Copy of a period's mutable state, taken before a batch runs."""
    period_id: int
    paid: bool
    paid_bits: Tuple[Tuple[str, bool], ...]
    paid_amounts: Tuple[Tuple[str, int], ...]


@dataclass(frozen=True)
class PaymentRecord:
    """A single payment emitted by the disbursement engine.

    term_tag is an opaque caller-supplied label (e.g. the term or cohort
    number) carried through to the record unchanged.
    """
    period_id: int
    recipient_id: str
    amount: int
    role: str
    term_tag: int


@dataclass(frozen=True)
class ActiveRecipient:
    """Row of the active-recipients projection."""
    recipient_id: str
    amount: int
    role: str


@dataclass(frozen=True)
class HistoryEntry:
    """One configured period, seen from a single recipient.

    amount is the recipient's *current* configured amount, not the amount
    at the time of payment. amount_paid is what was actually transferred,
    or None if the recipient has not been paid for the period.
    """
    period_id: int
    amount: int
    due_utc: datetime
    paid_bit: bool
    amount_paid: Optional[int] = None


@dataclass(frozen=True)
class PeriodStatus:
    """Observable settlement state of a period."""
    period_id: int
    due_utc: datetime
    paid: bool
    paid_count: int
    unpaid_active_ids: Tuple[str, ...]
    outstanding_amount: int


@dataclass(frozen=True)
class FundingStatus:
    """Funding source availability against a period's outstanding amount."""
    funding_source: str
    available: int
    outstanding_amount: int

    @property
    def is_sufficient(self) -> bool:
        return self.available >= self.outstanding_amount

    @property
    def shortfall(self) -> int:
        return max(0, self.outstanding_amount - self.available)
