"""Stipend service — unified facade over the stipend engine.

This is the primary interface for programmatic access. It wires together:
- Recipient registry (add, update, remove)
- Payment period ledger (schedule periods)
- Disbursement engine (process batches, settle periods)
- Reporting (active recipients, history, settlement and funding status)
- Governance (administrator gate, pause switch)
- Persistence (event log, state store)

All operations return a ServiceResult; engine errors never escape as
exceptions. Every mutation is serialised by one lock, audited in the
event log, and then persisted. If the audit append fails, the in-memory
mutation is rolled back and the operation fails closed.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

from stipend import __version__
from stipend.compensation.engine import DisbursementEngine
from stipend.compensation.ledger import PeriodLedger
from stipend.compensation.payment_rail import PaymentRail, StablecoinVault
from stipend.compensation.registry import RecipientRegistry, canonical_id
from stipend.compensation.reporting import ReportingView
from stipend.config import StipendConfig
from stipend.errors import (
    StipendError,
    TransferFailedError,
    TransferUnconfirmedError,
)
from stipend.governance.authority import AdministratorGate, PauseSwitch
from stipend.models.stipend import (
    ActiveRecipient,
    HistoryEntry,
    PaymentPeriod,
    PaymentRecord,
    Recipient,
)
from stipend.persistence.event_log import EventKind, EventLog, EventRecord
from stipend.persistence.state_store import StateStore


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StipendService:
    """Stipend engine facade.

    Usage:
        config = StipendConfig.from_config_dir(config_dir)
        vault = StablecoinVault()
        vault.mint(config.funding_source, 100_000_000_000)
        service = StipendService(config, vault)

        service.add_recipient("admin", "0xabc...", 4_000_000_000, "Regular Steward")
        service.set_period("admin", 1, due_utc)
        # ... once due, anyone may trigger payment:
        result = service.process_batch("anyone", 1, ["0xabc..."], term_tag=6)

    Persistence (optional):
        service = StipendService(config, vault, event_log=log, state_store=store)
        # State is persisted on each mutation and loaded on construction.
        # A vault rail's balances go into the same snapshot; restore them
        # with StateStore.load_rail_balances() before building the vault.
    """

    def __init__(
        self,
        config: StipendConfig,
        rail: PaymentRail,
        clock: Optional[Callable[[], datetime]] = None,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
    ) -> None:
        self._config = config
        self._rail = rail
        self._clock = clock or _utc_now
        self._event_log = event_log if event_log is not None else EventLog()
        self._state_store = state_store
        self._lock = threading.RLock()

        saved = state_store.load() if state_store is not None else None
        if saved is not None:
            self._registry = RecipientRegistry.from_records(
                config.max_monthly_amount, saved["recipients"], saved["roster"],
            )
            self._ledger = PeriodLedger.from_records(saved["periods"])
            self._pause = PauseSwitch(paused=bool(saved["paused"]))
            self._gate = AdministratorGate(
                saved.get("administrators") or config.administrators
            )
        else:
            self._registry = RecipientRegistry(config.max_monthly_amount)
            self._ledger = PeriodLedger()
            self._pause = PauseSwitch()
            self._gate = AdministratorGate(config.administrators)

        self._engine = DisbursementEngine(
            self._registry,
            self._ledger,
            rail,
            funding_source=config.funding_source,
            is_paused=self._pause.is_paused,
            lock=self._lock,
        )
        self._reporting = ReportingView(
            self._registry, self._ledger, rail, config.funding_source,
        )
        # Continue numbering from the persisted log to avoid ID collisions
        self._event_counter = self._event_log.count
        self._persistence_degraded = False

    @property
    def event_log(self) -> EventLog:
        return self._event_log

    # ------------------------------------------------------------------
    # Recipient management (administrator only)
    # ------------------------------------------------------------------

    def add_recipient(
        self,
        caller: str,
        recipient_id: str,
        amount: int,
        role: str,
    ) -> ServiceResult:
        """Register a recipient, or reactivate a removed one."""
        with self._lock:
            try:
                self._gate.require(caller)
                rid = canonical_id(recipient_id)
                previous = self._registry.get(rid)
                prev_state = asdict(previous) if previous is not None else None
                in_roster = rid in self._registry.roster()
                recipient = self._registry.add_recipient(recipient_id, amount, role)
            except StipendError as e:
                return ServiceResult(success=False, errors=[str(e)])

            def _rollback() -> None:
                if prev_state is None:
                    self._registry._recipients.pop(rid, None)
                else:
                    self._registry._recipients[rid] = Recipient(**prev_state)
                if not in_roster:
                    self._registry._roster.pop(rid, None)

            return self._commit(
                EventKind.RECIPIENT_ADDED,
                caller,
                _recipient_payload(recipient),
                _rollback,
                data={"recipient_id": recipient.recipient_id},
            )

    def update_recipient(
        self,
        caller: str,
        recipient_id: str,
        amount: int,
        role: str,
    ) -> ServiceResult:
        """Change an active recipient's monthly amount and role."""
        with self._lock:
            try:
                self._gate.require(caller)
                existing = self._registry.get(recipient_id)
                old_amount = existing.monthly_amount if existing else None
                old_role = existing.role if existing else None
                recipient = self._registry.update_recipient(recipient_id, amount, role)
            except StipendError as e:
                return ServiceResult(success=False, errors=[str(e)])

            def _rollback() -> None:
                recipient.monthly_amount = old_amount
                recipient.role = old_role

            payload = _recipient_payload(recipient)
            payload["previous_amount"] = old_amount
            return self._commit(
                EventKind.RECIPIENT_UPDATED,
                caller,
                payload,
                _rollback,
                data={"recipient_id": recipient.recipient_id},
            )

    def remove_recipient(self, caller: str, recipient_id: str) -> ServiceResult:
        """Deactivate a recipient. History is retained."""
        with self._lock:
            try:
                self._gate.require(caller)
                recipient = self._registry.remove_recipient(recipient_id)
            except StipendError as e:
                return ServiceResult(success=False, errors=[str(e)])

            def _rollback() -> None:
                recipient.is_active = True

            return self._commit(
                EventKind.RECIPIENT_REMOVED,
                caller,
                {"recipient_id": recipient.recipient_id},
                _rollback,
                data={"recipient_id": recipient.recipient_id},
            )

    # ------------------------------------------------------------------
    # Period scheduling (administrator only)
    # ------------------------------------------------------------------

    def set_period(
        self,
        caller: str,
        period_id: int,
        due_utc: datetime,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Schedule a period, or move the due time of an unsettled one."""
        with self._lock:
            if now is None:
                now = self._clock()
            try:
                self._gate.require(caller)
                existing = self._ledger.get(period_id)
                old_due = existing.due_utc if existing is not None else None
                period = self._ledger.set_period(period_id, due_utc, now=now)
            except StipendError as e:
                return ServiceResult(success=False, errors=[str(e)])

            def _rollback() -> None:
                if old_due is None:
                    self._ledger._periods.pop(period_id, None)
                else:
                    period.due_utc = old_due

            return self._commit(
                EventKind.PERIOD_SCHEDULED,
                caller,
                {
                    "period_id": period_id,
                    "due_utc": due_utc.isoformat(),
                    "rescheduled": old_due is not None,
                },
                _rollback,
                data={"period_id": period_id, "due_utc": due_utc.isoformat()},
                now=now,
            )

    # ------------------------------------------------------------------
    # Governance (administrator only)
    # ------------------------------------------------------------------

    def pause(self, caller: str) -> ServiceResult:
        """Stop disbursement. Configuration keeps working."""
        return self._set_paused(caller, True)

    def unpause(self, caller: str) -> ServiceResult:
        """Resume disbursement."""
        return self._set_paused(caller, False)

    def transfer_administration(self, caller: str, new_administrator: str) -> ServiceResult:
        """Hand the caller's administrator rights to another identity."""
        with self._lock:
            before = self._gate.administrators
            try:
                self._gate.transfer(caller, new_administrator)
            except StipendError as e:
                return ServiceResult(success=False, errors=[str(e)])

            def _rollback() -> None:
                self._gate._administrators = before

            return self._commit(
                EventKind.ADMINISTRATION_TRANSFERRED,
                caller,
                {"from": canonical_id(caller), "to": canonical_id(new_administrator)},
                _rollback,
                data={"administrators": self._gate.administrators},
            )

    def fund_vault(self, caller: str, account: str, amount: int) -> ServiceResult:
        """Credit an account on the local vault rail (administrator only)."""
        with self._lock:
            try:
                self._gate.require(caller)
            except StipendError as e:
                return ServiceResult(success=False, errors=[str(e)])
            vault = self._rail
            if not isinstance(vault, StablecoinVault):
                return ServiceResult(
                    success=False,
                    errors=[f"Rail '{vault.rail_id}' cannot be funded locally"],
                )
            try:
                vault.mint(account, amount)
            except ValueError as e:
                return ServiceResult(success=False, errors=[str(e)])

            def _rollback() -> None:
                vault._balances[account] -= amount

            return self._commit(
                EventKind.VAULT_FUNDED,
                caller,
                {"account": account, "amount": amount},
                _rollback,
                data={"account": account, "balance": vault.balance_of(account)},
            )

    def is_paused(self) -> bool:
        return self._pause.is_paused()

    # ------------------------------------------------------------------
    # Disbursement (open to any caller)
    # ------------------------------------------------------------------

    def process_batch(
        self,
        caller: str,
        period_id: int,
        candidate_ids: Iterable[str],
        term_tag: int,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Pay eligible candidates for a due period and re-check settlement.

        On success, data carries the emitted payments and the period's
        settlement flag. On failure, data carries only the payments the
        rail could not reverse; they are audited and persisted like any
        other payment. Rail exceptions never escape: they are recorded as
        a failed batch.
        """
        candidates = list(candidate_ids)
        with self._lock:
            if now is None:
                now = self._clock()
            try:
                records = self._engine.process_batch(
                    period_id, candidates, term_tag, now=now,
                )
            except TransferFailedError as e:
                # Payments the rail could not reverse are audited and kept.
                warnings = self._record_payments(caller, e.completed, now)
                return self._batch_failed(
                    caller, period_id, candidates, str(e), e.completed, warnings, now,
                    unconfirmed=isinstance(e, TransferUnconfirmedError),
                )
            except StipendError as e:
                return ServiceResult(success=False, errors=[str(e)])
            except Exception as e:
                return self._batch_failed(
                    caller, period_id, candidates, f"{type(e).__name__}: {e}",
                    (), [], now,
                )

            # Funds have moved; the audit trail must follow, never roll back.
            warnings = self._record_payments(caller, records, now)
            # Settled periods are refused on entry, so settled now means
            # this batch settled it.
            settled = self._ledger.is_settled(period_id)
            if settled:
                err = self._record_event(
                    EventKind.PERIOD_SETTLED, caller, {"period_id": period_id}, now,
                )
                if err:
                    warnings.append(err)
            if warnings:
                self._persistence_degraded = True
            persist_warning = self._safe_persist_post_audit()
            if persist_warning:
                warnings.append(persist_warning)

            data: dict[str, Any] = {
                "period_id": period_id,
                "payments": [asdict(r) for r in records],
                "settled": settled,
            }
            if warnings:
                data["warnings"] = warnings
            return ServiceResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    # Every query holds the service lock, so no caller ever sees a batch
    # in progress, and returns copies rather than live records.

    def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        with self._lock:
            recipient = self._registry.get(recipient_id)
            return replace(recipient) if recipient is not None else None

    def get_period(self, period_id: int) -> Optional[PaymentPeriod]:
        with self._lock:
            period = self._ledger.get(period_id)
            if period is None:
                return None
            return replace(
                period,
                paid_bits=dict(period.paid_bits),
                paid_amounts=dict(period.paid_amounts),
            )

    def active_recipients(self) -> list[ActiveRecipient]:
        with self._lock:
            return self._reporting.active_recipients()

    def payment_history(self, recipient_id: str) -> list[HistoryEntry]:
        with self._lock:
            return self._reporting.payment_history(recipient_id)

    def period_status(self, period_id: int) -> ServiceResult:
        with self._lock:
            try:
                status = self._reporting.period_status(period_id)
            except StipendError as e:
                return ServiceResult(success=False, errors=[str(e)])
        data = asdict(status)
        data["due_utc"] = status.due_utc.isoformat()
        data["unpaid_active_ids"] = list(status.unpaid_active_ids)
        return ServiceResult(success=True, data=data)

    def funding_status(self, period_id: int) -> ServiceResult:
        """Compare what the funding source can supply with what is owed."""
        with self._lock:
            try:
                status = self._reporting.funding_status(period_id)
            except StipendError as e:
                return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(
            success=True,
            data={
                "funding_source": status.funding_source,
                "available": status.available,
                "outstanding_amount": status.outstanding_amount,
                "is_sufficient": status.is_sufficient,
                "shortfall": status.shortfall,
            },
        )

    def period_audit(self, period_id: int) -> ServiceResult:
        """Audit events for one period: scheduling, payments, settlement, failures."""
        with self._lock:
            if self._ledger.get(period_id) is None:
                return ServiceResult(
                    success=False, errors=[f"Period not scheduled: {period_id}"],
                )
            events = self._event_log.events_for_period(period_id)
        return ServiceResult(
            success=True,
            data={
                "period_id": period_id,
                "events": [e.to_dict() for e in events],
                "payments": sum(
                    1 for e in events if e.event_kind == EventKind.PAYMENT_DISBURSED
                ),
                "failed_batches": sum(
                    1 for e in events if e.event_kind == EventKind.BATCH_FAILED
                ),
            },
        )

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        with self._lock:
            periods = self._ledger.all_periods()
            return {
                "version": __version__,
                "paused": self._pause.is_paused(),
                "administrators": self._gate.administrators,
                "funding_source": self._config.funding_source,
                "recipients": {
                    "total": len(self._registry.roster()),
                    "active": len(self._registry.active_recipients()),
                },
                "periods": {
                    "total": len(periods),
                    "settled": sum(1 for p in periods if p.paid),
                },
                "events": self._event_log.count,
                "persistence_degraded": self._persistence_degraded,
            }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _record_payments(
        self,
        caller: str,
        records: Iterable[PaymentRecord],
        now: datetime,
    ) -> list[str]:
        """Audit each payment. Returns event log failures as warnings."""
        warnings: list[str] = []
        for record in records:
            err = self._record_event(
                EventKind.PAYMENT_DISBURSED, caller, asdict(record), now,
            )
            if err:
                warnings.append(err)
        return warnings

    def _batch_failed(
        self,
        caller: str,
        period_id: int,
        candidates: list[str],
        reason: str,
        kept: tuple,
        warnings: list[str],
        now: datetime,
        unconfirmed: bool = False,
    ) -> ServiceResult:
        """Audit a failed batch and persist whatever payments stand."""
        err = self._record_event(
            EventKind.BATCH_FAILED,
            caller,
            {
                "period_id": period_id,
                "candidate_count": len(candidates),
                "payments_kept": len(kept),
                "unconfirmed": unconfirmed,
                "reason": reason,
            },
            now,
        )
        if err:
            warnings.append(err)
        if kept:
            persist_warning = self._safe_persist_post_audit()
            if persist_warning:
                warnings.append(persist_warning)
        return ServiceResult(
            success=False,
            errors=[reason] + warnings,
            data={
                "period_id": period_id,
                "payments": [asdict(r) for r in kept],
            },
        )

    def _set_paused(self, caller: str, paused: bool) -> ServiceResult:
        with self._lock:
            try:
                self._gate.require(caller)
            except StipendError as e:
                return ServiceResult(success=False, errors=[str(e)])
            was_paused = self._pause.is_paused()
            if paused:
                self._pause.pause()
            else:
                self._pause.unpause()

            def _rollback() -> None:
                if was_paused:
                    self._pause.pause()
                else:
                    self._pause.unpause()

            return self._commit(
                EventKind.SYSTEM_PAUSED if paused else EventKind.SYSTEM_UNPAUSED,
                caller,
                {"was_paused": was_paused},
                _rollback,
                data={"paused": paused},
            )

    def _commit(
        self,
        kind: EventKind,
        caller: str,
        payload: dict[str, Any],
        rollback: Callable[[], None],
        data: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Audit, then persist, a mutation that has already been applied.

        Audit failure rolls the mutation back. Persistence failure after a
        successful audit only degrades the store (the audit trail wins).
        """
        err = self._record_event(kind, caller, payload, now)
        if err:
            rollback()
            return ServiceResult(success=False, errors=[err])
        warning = self._safe_persist_post_audit()
        if warning:
            data = dict(data, warning=warning)
        return ServiceResult(success=True, data=data)

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _record_event(
        self,
        kind: EventKind,
        caller: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Append an audit event. Returns error string or None."""
        try:
            event = EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=kind,
                actor_id=canonical_id(caller) or "anonymous",
                payload=payload,
                timestamp_utc=now or self._clock(),
            )
            self._event_log.append(event)
        except (ValueError, OSError) as e:
            return f"Event log failure: {e}"
        return None

    def _persist_state(self) -> None:
        """Persist current state to the state store (if wired).

        Can raise OSError; callers go through _safe_persist_post_audit().
        """
        if self._state_store is None:
            return
        self._state_store.save(
            self._registry,
            self._ledger,
            paused=self._pause.is_paused(),
            administrators=self._gate.administrators,
            rail_balances=(
                self._rail.balances()
                if isinstance(self._rail, StablecoinVault)
                else None
            ),
        )

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Persist state after audit events have been committed.

        MUST NOT roll back in-memory state — the audit trail is already
        durable. On failure the store is stale: the degraded flag is set
        and a warning string returned.
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            self._persistence_degraded = True
            return f"Persistence degraded: {e} — state committed in audit trail but StateStore is stale"


def _recipient_payload(recipient: Recipient) -> dict[str, Any]:
    return {
        "recipient_id": recipient.recipient_id,
        "monthly_amount": recipient.monthly_amount,
        "role": recipient.role,
    }
