"""Disbursement engine — pays each eligible recipient at most once per period.

Anyone may call process_batch() once a period is due. The caller picks
the candidates, so a large roster can be settled by several small
batches. Candidates that are inactive or already paid are skipped
silently, which makes batches composable and safe to resubmit.

Per batch:
1. For each candidate (in order, duplicates harmless): if active and
   unpaid, set the paid-bit, then transfer monthly_amount from the
   funding source and emit a PaymentRecord.
2. Recompute settlement over the whole roster: if every active recipient
   has a paid-bit, mark the period settled. Settlement never reverts.
3. Return the records emitted by this call.

The paid-bit is written before the transfer is attempted. If a transfer
fails, the batch is aborted and the caller sees TransferFailedError:
- Transactional rails: every write is undone, including the transfers
  already made. Nothing from the batch stands.
- Other rails: transfers that went through cannot be recalled, so their
  paid-bits and amounts stand and are returned on the error as
  `completed`. Only the failing recipient is unmarked, unless the rail
  reports the transfer as broadcast but unconfirmed
  (TransferUnconfirmedError), in which case it stays marked too.

Any exception the rail raises from transfer() is reported as
TransferFailedError chained to the original.

Settlement recomputation is O(roster size) per call. Batching bounds the
transfer work, not the re-scan.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from stipend.compensation.ledger import PeriodLedger
from stipend.compensation.payment_rail import PaymentRail, TransactionalRail
from stipend.compensation.registry import RecipientRegistry, canonical_id
from stipend.errors import (
    PeriodSettledError,
    SystemPausedError,
    TooEarlyError,
    TransferFailedError,
    TransferUnconfirmedError,
)
from stipend.models.stipend import PaymentRecord, PeriodSnapshot


class DisbursementEngine:
    """Executes payment batches against the registry and the ledger.

    Usage:
        engine = DisbursementEngine(
            registry, ledger, rail,
            funding_source="treasury",
            is_paused=pause_switch.is_paused,
        )
        records = engine.process_batch(1, ["0xabc...", "0xdef..."], term_tag=6)

    The engine is the only writer of paid-bits and settlement flags.
    Every call holds the engine lock, so overlapping batches for the same
    period are serialised and no paid-bit can be flipped twice.
    """

    def __init__(
        self,
        registry: RecipientRegistry,
        ledger: PeriodLedger,
        rail: PaymentRail,
        funding_source: str,
        is_paused: Optional[Callable[[], bool]] = None,
        lock: Optional[threading.RLock] = None,
    ) -> None:
        if not isinstance(rail, PaymentRail):
            raise TypeError(
                f"Rail must implement PaymentRail Protocol, got {type(rail)}",
            )
        self._registry = registry
        self._ledger = ledger
        self._rail = rail
        self._funding_source = funding_source
        self._is_paused = is_paused or (lambda: False)
        self._lock = lock if lock is not None else threading.RLock()

    @property
    def funding_source(self) -> str:
        return self._funding_source

    @property
    def rail(self) -> PaymentRail:
        return self._rail

    def process_batch(
        self,
        period_id: int,
        candidate_ids: Iterable[str],
        term_tag: int,
        now: Optional[datetime] = None,
    ) -> List[PaymentRecord]:
        """Pay every eligible candidate for a due, unsettled period.

        Args:
            period_id: The period to disburse.
            candidate_ids: Recipients to consider, in payment order.
            term_tag: Opaque label copied into every emitted record.
            now: Current time (defaults to UTC now).

        Returns:
            The payment records emitted by this call (possibly empty).

        Raises:
            SystemPausedError: disbursement is paused.
            UnknownPeriodError: the period was never scheduled.
            PeriodSettledError: the period is already settled.
            TooEarlyError: the period is not yet due.
            TransferFailedError: a transfer failed. Payments the rail cannot
                reverse stand and are listed in its completed attribute.
        """
        candidates = list(candidate_ids)
        with self._lock:
            if self._is_paused():
                raise SystemPausedError("Disbursement is paused")
            if now is None:
                now = datetime.now(timezone.utc)

            if self._ledger.is_settled(period_id):
                raise PeriodSettledError(f"Period {period_id} is already settled")
            period = self._ledger.get(period_id)
            if now < period.due_utc:
                raise TooEarlyError(
                    f"Period {period_id} is due at {period.due_utc.isoformat()}, "
                    f"current time is {now.isoformat()}"
                )

            snapshot = self._ledger.snapshot(period_id)
            savepoint = (
                self._rail.savepoint()
                if isinstance(self._rail, TransactionalRail)
                else None
            )
            records: List[PaymentRecord] = []
            try:
                self._pay_candidates(period_id, candidates, term_tag, records)
                self._recompute_settlement(period_id)
            except TransferFailedError as e:
                e.completed = self._abort(snapshot, savepoint, records)
                raise
            except Exception:
                self._abort(snapshot, savepoint, records)
                raise
            return records

    def _recompute_settlement(self, period_id: int) -> bool:
        """Mark the period settled if every active recipient is paid.

        Only process_batch calls this, after its due-time and pause checks.
        Returns the period's settlement flag after the check. A period
        that is already settled stays settled regardless of the roster.
        """
        if self._ledger.is_settled(period_id):
            return True
        for recipient in self._registry.active_recipients():
            if not self._ledger.is_paid_to(period_id, recipient.recipient_id):
                return False
        self._ledger.mark_settled(period_id)
        return True

    def _abort(
        self,
        snapshot: PeriodSnapshot,
        savepoint: Optional[int],
        records: List[PaymentRecord],
    ) -> Tuple[PaymentRecord, ...]:
        """Undo a failed batch. Returns the payments that stand."""
        self._ledger.restore(snapshot)
        if savepoint is not None:
            self._rail.rollback_to(savepoint)
            return ()
        # Transfers on this rail cannot be recalled; their paid-bits stand.
        for record in records:
            self._ledger.mark_paid_to(
                record.period_id, record.recipient_id, record.amount,
            )
        return tuple(records)

    def _pay_candidates(
        self,
        period_id: int,
        candidates: List[str],
        term_tag: int,
        records: List[PaymentRecord],
    ) -> None:
        for raw_id in candidates:
            rid = canonical_id(raw_id)
            recipient = self._registry.get(rid)
            if recipient is None or not recipient.is_active:
                continue
            if self._ledger.is_paid_to(period_id, rid):
                continue

            amount = recipient.monthly_amount
            # Bit first: the guard must hold even if the rail re-enters.
            self._ledger.mark_paid_to(period_id, rid, amount)
            record = PaymentRecord(
                period_id=period_id,
                recipient_id=rid,
                amount=amount,
                role=recipient.role,
                term_tag=term_tag,
            )
            failure = (
                f"Transfer of {amount} from {self._funding_source} to {rid} "
                f"failed on rail '{self._rail.rail_id}' (period {period_id})"
            )
            try:
                ok = self._rail.transfer(self._funding_source, rid, amount)
            except TransferUnconfirmedError:
                # Broadcast; it may still settle.
                records.append(record)
                raise
            except TransferFailedError:
                raise
            except Exception as e:
                raise TransferFailedError(
                    f"{failure}: {type(e).__name__}: {e}"
                ) from e
            if not ok:
                raise TransferFailedError(failure)
            records.append(record)
