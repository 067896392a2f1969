"""Tests for the stipend service facade — gating, audit trail, persistence."""

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from stipend.compensation.payment_rail import StablecoinVault
from stipend.config import StipendConfig
from stipend.persistence.event_log import EventKind, EventLog
from stipend.persistence.state_store import StateStore
from stipend.service import StipendService

A = "0x1111111111111111111111111111111111111111"
B = "0x2222222222222222222222222222222222222222"
C = "0x3333333333333333333333333333333333333333"


def _now() -> datetime:
    return datetime(2026, 10, 1, 12, 0, 0, tzinfo=timezone.utc)


def _config() -> StipendConfig:
    return StipendConfig(
        max_monthly_amount=10_000_000_000,
        funding_source="treasury",
        administrators=["admin"],
    )


def _vault(amount: int = 100_000) -> StablecoinVault:
    vault = StablecoinVault()
    vault.mint("treasury", amount)
    return vault


def _service(vault: StablecoinVault | None = None, **kwargs) -> StipendService:
    return StipendService(
        _config(), vault if vault is not None else _vault(), clock=_now, **kwargs,
    )


def _due_period(service: StipendService, period_id: int = 1) -> datetime:
    """Schedule a period an hour ahead; return a time after it falls due."""
    service.set_period("admin", period_id, _now() + timedelta(hours=1))
    return _now() + timedelta(hours=2)


class _FailingEventLog(EventLog):
    def append(self, event) -> None:
        raise OSError("disk full")


class _FailingStateStore(StateStore):
    def save(self, *args, **kwargs) -> None:
        raise OSError("read-only filesystem")


class TestAdministration:
    def test_admin_adds_recipient(self) -> None:
        service = _service()
        result = service.add_recipient("admin", A, 100, "steward")
        assert result.success
        assert result.data["recipient_id"] == A
        assert service.get_recipient(A).monthly_amount == 100

    def test_non_admin_rejected(self) -> None:
        service = _service()
        result = service.add_recipient("mallory", A, 100, "steward")
        assert not result.success
        assert "not an administrator" in result.errors[0]
        assert service.get_recipient(A) is None
        assert service.event_log.count == 0

    def test_engine_errors_become_results(self) -> None:
        service = _service()
        assert not service.add_recipient("admin", A, 0, "steward").success
        assert not service.update_recipient("admin", A, 5, "steward").success
        assert not service.remove_recipient("admin", A).success
        result = service.set_period("admin", 1, _now() - timedelta(seconds=1))
        assert not result.success
        assert "not after current time" in result.errors[0]

    def test_update_and_remove(self) -> None:
        service = _service()
        service.add_recipient("admin", A, 100, "steward")
        assert service.update_recipient("admin", A, 150, "senior").success
        assert service.get_recipient(A).role == "senior"
        assert service.remove_recipient("admin", A).success
        assert service.active_recipients() == []

    def test_events_recorded_in_order(self) -> None:
        service = _service()
        service.add_recipient("admin", A, 100, "steward")
        service.update_recipient("admin", A, 150, "steward")
        service.set_period("admin", 1, _now() + timedelta(days=1))
        service.remove_recipient("admin", A)
        kinds = [e.event_kind for e in service.event_log.events()]
        assert kinds == [
            EventKind.RECIPIENT_ADDED,
            EventKind.RECIPIENT_UPDATED,
            EventKind.PERIOD_SCHEDULED,
            EventKind.RECIPIENT_REMOVED,
        ]
        updated = service.event_log.events(EventKind.RECIPIENT_UPDATED)[0]
        assert updated.payload["previous_amount"] == 100
        assert [e.event_id for e in service.event_log.events()][0] == "EVT-00000001"

    def test_transfer_administration(self) -> None:
        service = _service()
        result = service.transfer_administration("admin", "successor")
        assert result.success
        assert result.data["administrators"] == ["successor"]
        assert not service.add_recipient("admin", A, 100, "steward").success
        assert service.add_recipient("successor", A, 100, "steward").success


class TestPause:
    def test_pause_blocks_disbursement_only(self) -> None:
        service = _service()
        service.add_recipient("admin", A, 100, "steward")
        later = _due_period(service)
        assert service.pause("admin").success
        assert service.is_paused()

        # Configuration still works while paused
        assert service.add_recipient("admin", B, 200, "steward").success
        result = service.process_batch("anyone", 1, [A, B], 6, now=later)
        assert not result.success
        assert "paused" in result.errors[0]

        assert service.unpause("admin").success
        assert service.process_batch("anyone", 1, [A, B], 6, now=later).success

    def test_pause_requires_admin(self) -> None:
        service = _service()
        assert not service.pause("mallory").success
        assert not service.is_paused()


class TestProcessBatch:
    def test_any_caller_may_disburse(self) -> None:
        vault = _vault()
        service = _service(vault)
        service.add_recipient("admin", A, 100, "steward")
        service.add_recipient("admin", B, 200, "steward")
        later = _due_period(service)

        result = service.process_batch("anyone", 1, [A, B], 6, now=later)
        assert result.success
        assert result.data["settled"] is True
        assert [p["recipient_id"] for p in result.data["payments"]] == [A, B]
        assert result.data["payments"][0]["term_tag"] == 6
        assert vault.balance_of(A) == 100
        assert vault.balance_of(B) == 200
        assert "warnings" not in result.data

        disbursed = service.event_log.events(EventKind.PAYMENT_DISBURSED)
        assert [e.payload["recipient_id"] for e in disbursed] == [A, B]
        assert len(service.event_log.events(EventKind.PERIOD_SETTLED)) == 1

    def test_partial_batch_then_settle(self) -> None:
        service = _service()
        service.add_recipient("admin", A, 100, "steward")
        service.add_recipient("admin", B, 200, "steward")
        later = _due_period(service)

        first = service.process_batch("anyone", 1, [A], 6, now=later)
        assert first.success and first.data["settled"] is False
        assert service.event_log.events(EventKind.PERIOD_SETTLED) == []

        second = service.process_batch("anyone", 1, [A, B], 6, now=later)
        assert [p["recipient_id"] for p in second.data["payments"]] == [B]
        assert second.data["settled"] is True

    def test_settled_period_refused(self) -> None:
        service = _service()
        service.add_recipient("admin", A, 100, "steward")
        later = _due_period(service)
        service.process_batch("anyone", 1, [A], 6, now=later)
        result = service.process_batch("anyone", 1, [A], 6, now=later)
        assert not result.success
        assert "already settled" in result.errors[0]

    def test_too_early_refused(self) -> None:
        service = _service()
        service.add_recipient("admin", A, 100, "steward")
        _due_period(service)
        result = service.process_batch("anyone", 1, [A], 6)
        assert not result.success
        assert "is due at" in result.errors[0]

    def test_transfer_failure_records_batch_failed(self) -> None:
        vault = _vault(150)
        service = _service(vault)
        service.add_recipient("admin", A, 100, "steward")
        service.add_recipient("admin", B, 200, "steward")
        later = _due_period(service)

        result = service.process_batch("anyone", 1, [A, B], 6, now=later)
        assert not result.success
        assert "failed on rail 'vault'" in result.errors[0]
        assert vault.balance_of("treasury") == 150
        assert vault.balance_of(A) == 0
        assert not service.get_period(1).is_paid_to(A)

        failed = service.event_log.events(EventKind.BATCH_FAILED)
        assert len(failed) == 1
        assert failed[0].payload["candidate_count"] == 2
        assert service.event_log.events(EventKind.PAYMENT_DISBURSED) == []

    def test_late_recipient_does_not_reopen(self) -> None:
        service = _service()
        service.add_recipient("admin", A, 100, "steward")
        later = _due_period(service)
        service.process_batch("anyone", 1, [A], 6, now=later)
        service.add_recipient("admin", C, 300, "steward")

        status = service.period_status(1)
        assert status.success
        assert status.data["paid"] is True
        assert status.data["unpaid_active_ids"] == [C]
        assert status.data["outstanding_amount"] == 0



class _DirectRail:
    """A rail that cannot reverse transfers, like a chain."""

    def __init__(self, balance: int, fail_for: str = "", error: Exception | None = None) -> None:
        self.balances = {"treasury": balance}
        self.fail_for = fail_for
        self.error = error

    @property
    def rail_id(self) -> str:
        return "direct"

    def transfer(self, source: str, to: str, amount: int) -> bool:
        if to == self.fail_for:
            if self.error is not None:
                raise self.error
            return False
        self.balances[source] -= amount
        self.balances[to] = self.balances.get(to, 0) + amount
        return True

    def available(self, source: str) -> int:
        return self.balances.get(source, 0)


class _ObservedVault(StablecoinVault):
    """Starts a reader thread during the first transfer of a batch."""

    def __init__(self, service_ref: list, seen: list) -> None:
        super().__init__({"treasury": 150})
        self._service_ref = service_ref
        self._seen = seen
        self.reader: threading.Thread | None = None

    def transfer(self, source: str, to: str, amount: int) -> bool:
        if self.reader is None:
            service = self._service_ref[0]
            self.reader = threading.Thread(
                target=lambda: self._seen.append(service.period_status(1).data["paid_count"]),
            )
            self.reader.start()
            self.reader.join(timeout=0.2)
        return super().transfer(source, to, amount)


class TestBatchFailures:
    def test_rail_exception_is_recorded(self) -> None:
        rail = _DirectRail(1_000, fail_for=A, error=ConnectionError("rpc down"))
        service = StipendService(_config(), rail, clock=_now)
        service.add_recipient("admin", A, 100, "steward")
        later = _due_period(service)

        result = service.process_batch("anyone", 1, [A], 6, now=later)
        assert not result.success
        assert "rpc down" in result.errors[0]
        failed = service.event_log.events(EventKind.BATCH_FAILED)
        assert len(failed) == 1
        assert "ConnectionError" in failed[0].payload["reason"]
        assert not service.get_period(1).is_paid_to(A)

    def test_irreversible_payments_are_kept_and_audited(self, tmp_path: Path) -> None:
        rail = _DirectRail(1_000, fail_for=B)
        store = StateStore(tmp_path / "state.json")
        service = StipendService(_config(), rail, clock=_now, state_store=store)
        service.add_recipient("admin", A, 100, "steward")
        service.add_recipient("admin", B, 200, "steward")
        later = _due_period(service)

        result = service.process_batch("anyone", 1, [A, B], 6, now=later)
        assert not result.success
        assert [p["recipient_id"] for p in result.data["payments"]] == [A]
        assert service.get_period(1).is_paid_to(A)
        assert not service.get_period(1).is_paid_to(B)
        assert rail.balances[A] == 100

        paid = service.event_log.events(EventKind.PAYMENT_DISBURSED)
        assert [e.payload["recipient_id"] for e in paid] == [A]
        failed = service.event_log.events(EventKind.BATCH_FAILED)
        assert failed[0].payload["payments_kept"] == 1
        assert store.load_ledger().is_paid_to(1, A)

        # A retry pays only the recipient that failed
        rail.fail_for = ""
        retry = service.process_batch("anyone", 1, [A, B], 6, now=later)
        assert retry.success
        assert [p["recipient_id"] for p in retry.data["payments"]] == [B]
        assert rail.balances[A] == 100
        assert retry.data["settled"] is True

    def test_reader_never_sees_a_batch_in_progress(self) -> None:
        seen: list[int] = []
        service_ref: list[StipendService] = []
        vault = _ObservedVault(service_ref, seen)
        service = _service(vault)
        service_ref.append(service)
        service.add_recipient("admin", A, 100, "steward")
        service.add_recipient("admin", B, 200, "steward")
        later = _due_period(service)

        result = service.process_batch("anyone", 1, [A, B], 6, now=later)
        vault.reader.join(timeout=5)
        assert not result.success
        # The reader waited for the aborted batch, not its half-written state
        assert seen == [0]


class TestVaultFunding:
    def test_admin_funds_vault(self) -> None:
        vault = _vault(100)
        service = _service(vault)
        result = service.fund_vault("admin", "treasury", 50)
        assert result.success
        assert result.data["balance"] == 150
        assert vault.balance_of("treasury") == 150
        funded = service.event_log.events(EventKind.VAULT_FUNDED)
        assert funded[0].payload == {"account": "treasury", "amount": 50}

    def test_non_admin_cannot_fund(self) -> None:
        vault = _vault(100)
        result = _service(vault).fund_vault("mallory", "treasury", 50)
        assert not result.success
        assert vault.balance_of("treasury") == 100

    def test_non_positive_amount_rejected(self) -> None:
        result = _service().fund_vault("admin", "treasury", 0)
        assert not result.success
        assert "must be positive" in result.errors[0]

    def test_other_rails_cannot_be_funded(self) -> None:
        service = StipendService(_config(), _DirectRail(0), clock=_now)
        result = service.fund_vault("admin", "treasury", 50)
        assert not result.success
        assert "cannot be funded locally" in result.errors[0]

    def test_audit_failure_reverses_funding(self) -> None:
        vault = _vault(100)
        service = _service(vault, event_log=_FailingEventLog())
        assert not service.fund_vault("admin", "treasury", 50).success
        assert vault.balance_of("treasury") == 100

    def test_balances_persist_with_state(self, tmp_path: Path) -> None:
        store = StateStore(tmp_path / "state.json")
        vault = _vault(100)
        service = _service(vault, state_store=store)
        service.add_recipient("admin", A, 40, "steward")
        later = _due_period(service)
        service.process_batch("anyone", 1, [A], 6, now=later)

        assert store.load_rail_balances() == {"treasury": 60, A: 40}
        assert store.load_ledger().is_paid_to(1, A)


class TestQueries:
    def test_payment_history(self) -> None:
        service = _service()
        service.add_recipient("admin", A, 100, "steward")
        later = _due_period(service)
        service.set_period("admin", 2, _now() + timedelta(days=30))
        service.process_batch("anyone", 1, [A], 6, now=later)

        history = service.payment_history(A)
        assert [h.period_id for h in history] == [1, 2]
        assert [h.paid_bit for h in history] == [True, False]
        assert history[0].amount_paid == 100

    def test_period_status_unknown_period(self) -> None:
        result = _service().period_status(9)
        assert not result.success
        assert "not scheduled" in result.errors[0]

    def test_period_status_serialises_due_time(self) -> None:
        service = _service()
        due = _now() + timedelta(hours=1)
        service.set_period("admin", 1, due)
        assert service.period_status(1).data["due_utc"] == due.isoformat()

    def test_funding_status(self) -> None:
        service = _service(_vault(250))
        service.add_recipient("admin", A, 100, "steward")
        service.add_recipient("admin", B, 200, "steward")
        _due_period(service)

        result = service.funding_status(1)
        assert result.success
        assert result.data["available"] == 250
        assert result.data["outstanding_amount"] == 300
        assert result.data["is_sufficient"] is False
        assert result.data["shortfall"] == 50

    def test_status_summary(self) -> None:
        service = _service()
        service.add_recipient("admin", A, 100, "steward")
        service.add_recipient("admin", B, 100, "steward")
        service.remove_recipient("admin", B)
        later = _due_period(service)
        service.process_batch("anyone", 1, [A], 6, now=later)

        status = service.status()
        assert status["paused"] is False
        assert status["administrators"] == ["admin"]
        assert status["recipients"] == {"total": 2, "active": 1}
        assert status["periods"] == {"total": 1, "settled": 1}
        assert status["events"] == 6
        assert status["persistence_degraded"] is False

    def test_queries_return_copies(self) -> None:
        service = _service()
        service.add_recipient("admin", A, 100, "steward")
        _due_period(service)

        period = service.get_period(1)
        period.paid_bits[A] = True
        period.paid = True
        service.get_recipient(A).monthly_amount = 1

        assert not service.get_period(1).is_paid_to(A)
        assert not service.get_period(1).paid
        assert service.get_recipient(A).monthly_amount == 100

    def test_period_audit(self) -> None:
        vault = _vault(150)
        service = _service(vault)
        service.add_recipient("admin", A, 100, "steward")
        service.add_recipient("admin", B, 200, "steward")
        later = _due_period(service)
        service.set_period("admin", 2, _now() + timedelta(days=30))
        service.process_batch("anyone", 1, [A, B], 6, now=later)
        vault.mint("treasury", 500)
        service.process_batch("anyone", 1, [A, B], 6, now=later)

        audit = service.period_audit(1)
        assert audit.success
        assert [e["event_kind"] for e in audit.data["events"]] == [
            "period_scheduled", "batch_failed",
            "payment_disbursed", "payment_disbursed", "period_settled",
        ]
        assert audit.data["payments"] == 2
        assert audit.data["failed_batches"] == 1

        assert not service.period_audit(9).success


class TestPersistence:
    def test_state_survives_restart(self, tmp_path: Path) -> None:
        vault = _vault()
        log_path = tmp_path / "events.jsonl"
        store_path = tmp_path / "state.json"

        service = _service(
            vault,
            event_log=EventLog(storage_path=log_path),
            state_store=StateStore(store_path),
        )
        service.add_recipient("admin", A, 100, "steward")
        service.add_recipient("admin", B, 200, "steward")
        later = _due_period(service)
        service.process_batch("anyone", 1, [A], 6, now=later)
        service.pause("admin")

        restarted = _service(
            vault,
            event_log=EventLog(storage_path=log_path),
            state_store=StateStore(store_path),
        )
        assert restarted.is_paused()
        assert restarted.get_period(1).is_paid_to(A)
        assert not restarted.get_period(1).paid
        assert [r.recipient_id for r in restarted.active_recipients()] == [A, B]

        # Event numbering continues from the persisted log
        restarted.unpause("admin")
        assert restarted.event_log.last_event.event_id == "EVT-00000006"

        # The restarted service still refuses to pay A twice
        result = restarted.process_batch("anyone", 1, [A, B], 6, now=later)
        assert [p["recipient_id"] for p in result.data["payments"]] == [B]
        assert vault.balance_of(A) == 100

    def test_audit_failure_rolls_back(self) -> None:
        service = _service(event_log=_FailingEventLog())
        result = service.add_recipient("admin", A, 100, "steward")
        assert not result.success
        assert "Event log failure" in result.errors[0]
        assert service.get_recipient(A) is None
        assert service.status()["recipients"]["total"] == 0

        assert not service.pause("admin").success
        assert not service.is_paused()

        assert not service.set_period("admin", 1, _now() + timedelta(days=1)).success
        assert service.get_period(1) is None

    def test_store_failure_degrades(self, tmp_path: Path) -> None:
        service = _service(state_store=_FailingStateStore(tmp_path / "state.json"))
        result = service.add_recipient("admin", A, 100, "steward")
        assert result.success
        assert "Persistence degraded" in result.data["warning"]
        assert service.status()["persistence_degraded"] is True
        assert service.get_recipient(A) is not None
