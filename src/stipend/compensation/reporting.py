"""Read-only projections over the registry and the ledger.

Nothing here mutates state.

Note on payment_history(): HistoryEntry.amount is the recipient's
*current* monthly amount, not the amount in force when the period was
paid. Callers that need the exact historical figure should read
HistoryEntry.amount_paid, which comes from the ledger's record of the
transfer itself.
"""

from __future__ import annotations

from typing import List, Optional

from stipend.compensation.ledger import PeriodLedger
from stipend.compensation.payment_rail import PaymentRail
from stipend.compensation.registry import RecipientRegistry, canonical_id
from stipend.errors import UnknownPeriodError
from stipend.models.stipend import (
    ActiveRecipient,
    FundingStatus,
    HistoryEntry,
    PeriodStatus,
)


class ReportingView:
    """Query side of the stipend engine."""

    def __init__(
        self,
        registry: RecipientRegistry,
        ledger: PeriodLedger,
        rail: Optional[PaymentRail] = None,
        funding_source: Optional[str] = None,
    ) -> None:
        self._registry = registry
        self._ledger = ledger
        self._rail = rail
        self._funding_source = funding_source

    def active_recipients(self) -> List[ActiveRecipient]:
        """Snapshot of active recipients in roster insertion order."""
        return [
            ActiveRecipient(
                recipient_id=r.recipient_id,
                amount=r.monthly_amount,
                role=r.role,
            )
            for r in self._registry.active_recipients()
        ]

    def payment_history(self, recipient_id: str) -> List[HistoryEntry]:
        """One entry per configured period, ascending by period ID.

        Unknown recipients get entries with amount 0 and no paid-bits.
        """
        rid = canonical_id(recipient_id)
        recipient = self._registry.get(rid)
        current_amount = recipient.monthly_amount if recipient is not None else 0
        return [
            HistoryEntry(
                period_id=period.period_id,
                amount=current_amount,
                due_utc=period.due_utc,
                paid_bit=period.is_paid_to(rid),
                amount_paid=period.paid_amounts.get(rid),
            )
            for period in self._ledger.all_periods()
        ]

    def period_status(self, period_id: int) -> PeriodStatus:
        """Settlement progress of a period against the current roster."""
        period = self._ledger.get(period_id)
        if period is None:
            raise UnknownPeriodError(f"Period not scheduled: {period_id}")
        unpaid = [
            r for r in self._registry.active_recipients()
            if not period.is_paid_to(r.recipient_id)
        ]
        return PeriodStatus(
            period_id=period_id,
            due_utc=period.due_utc,
            paid=period.paid,
            paid_count=sum(1 for bit in period.paid_bits.values() if bit),
            unpaid_active_ids=tuple(r.recipient_id for r in unpaid),
            # A settled period owes nothing, even to late joiners.
            outstanding_amount=0 if period.paid else sum(r.monthly_amount for r in unpaid),
        )

    def funding_status(self, period_id: int) -> FundingStatus:
        """Can the funding source cover what the period still owes?"""
        if self._rail is None or self._funding_source is None:
            raise ValueError("No payment rail configured for funding inspection")
        status = self.period_status(period_id)
        return FundingStatus(
            funding_source=self._funding_source,
            available=self._rail.available(self._funding_source),
            outstanding_amount=status.outstanding_amount,
        )
