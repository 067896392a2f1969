"""Payment period ledger — due times, paid-bits, and settlement flags.

The administrator schedules periods here. The disbursement engine is the
only caller of the paid-bit and settlement writers; nothing else flips
them.

Monotonicity:
- A paid-bit, once True, is never reset for the lifetime of the period.
- A settled period cannot be rescheduled and is never reopened.

The only way state moves backwards is restore(), which the engine uses to
undo its own writes when a batch fails part-way through.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from stipend.errors import AlreadySettledError, NotFutureError, UnknownPeriodError
from stipend.models.stipend import PaymentPeriod, PeriodSnapshot


class PeriodLedger:
    """In-memory ledger of payment periods.

    Usage:
        ledger = PeriodLedger()
        ledger.set_period(1, due_utc, now=now)

        # Engine side:
        if not ledger.is_paid_to(1, recipient_id):
            ledger.mark_paid_to(1, recipient_id, amount)
    """

    def __init__(self) -> None:
        self._periods: Dict[int, PaymentPeriod] = {}

    @classmethod
    def from_records(cls, periods: Iterable[dict]) -> PeriodLedger:
        """Restore ledger state from persisted records."""
        ledger = cls()
        for p in periods:
            period = PaymentPeriod(
                period_id=int(p["period_id"]),
                due_utc=datetime.fromisoformat(p["due_utc"]),
                paid=bool(p["paid"]),
                paid_bits={k: bool(v) for k, v in p.get("paid_bits", {}).items()},
                paid_amounts={k: int(v) for k, v in p.get("paid_amounts", {}).items()},
            )
            ledger._periods[period.period_id] = period
        return ledger

    def set_period(
        self,
        period_id: int,
        due_utc: datetime,
        now: Optional[datetime] = None,
    ) -> PaymentPeriod:
        """Schedule a period, or move the due time of an unsettled one.

        Rescheduling keeps the period's paid-bits.

        Raises:
            NotFutureError: due_utc is not strictly after now.
            AlreadySettledError: the period is already settled.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if due_utc <= now:
            raise NotFutureError(
                f"Period {period_id} due time {due_utc.isoformat()} is not "
                f"after current time {now.isoformat()}"
            )
        period = self._periods.get(period_id)
        if period is not None and period.paid:
            raise AlreadySettledError(f"Period {period_id} is already settled")

        if period is None:
            period = PaymentPeriod(period_id=period_id, due_utc=due_utc)
            self._periods[period_id] = period
        else:
            period.due_utc = due_utc
        return period

    def get(self, period_id: int) -> Optional[PaymentPeriod]:
        """Retrieve a period by ID."""
        return self._periods.get(period_id)

    def period_ids(self) -> List[int]:
        """IDs of every configured period, ascending."""
        return sorted(self._periods)

    def all_periods(self) -> List[PaymentPeriod]:
        return [self._periods[pid] for pid in self.period_ids()]

    # ------------------------------------------------------------------
    # Engine-side accessors
    # ------------------------------------------------------------------

    def is_paid_to(self, period_id: int, recipient_id: str) -> bool:
        return self._get(period_id).is_paid_to(recipient_id)

    def mark_paid_to(self, period_id: int, recipient_id: str, amount: int) -> None:
        """Set a recipient's paid-bit and record the amount paid."""
        period = self._get(period_id)
        if period.paid_bits.get(recipient_id, False):
            raise ValueError(
                f"Recipient {recipient_id} already paid for period {period_id}"
            )
        period.paid_bits[recipient_id] = True
        period.paid_amounts[recipient_id] = amount

    def is_settled(self, period_id: int) -> bool:
        return self._get(period_id).paid

    def mark_settled(self, period_id: int) -> None:
        self._get(period_id).paid = True

    def snapshot(self, period_id: int) -> PeriodSnapshot:
        """Capture a period's mutable state for later restore()."""
        period = self._get(period_id)
        return PeriodSnapshot(
            period_id=period_id,
            paid=period.paid,
            paid_bits=tuple(period.paid_bits.items()),
            paid_amounts=tuple(period.paid_amounts.items()),
        )

    def restore(self, snapshot: PeriodSnapshot) -> None:
        """Put a period back to a snapshot taken by snapshot()."""
        period = self._get(snapshot.period_id)
        period.paid = snapshot.paid
        period.paid_bits = dict(snapshot.paid_bits)
        period.paid_amounts = dict(snapshot.paid_amounts)

    def _get(self, period_id: int) -> PaymentPeriod:
        period = self._periods.get(period_id)
        if period is None:
            raise UnknownPeriodError(f"Period not scheduled: {period_id}")
        return period
