"""State store — JSON snapshot of registry, ledger, and governance state.

The event log is the audit trail; the state store is the fast path for
restarting without replaying it. The snapshot, including the local
vault's balances when that rail is in use, is rewritten whole after
every successful mutation via a temporary file and an atomic rename, so
a crash mid-write leaves the previous snapshot intact.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

from stipend.compensation.ledger import PeriodLedger
from stipend.compensation.registry import RecipientRegistry

STATE_VERSION = 1


class StateStore:
    """File-backed snapshot of stipend state."""

    def __init__(self, storage_path: Path) -> None:
        self._storage_path = storage_path

    @property
    def storage_path(self) -> Path:
        return self._storage_path

    def exists(self) -> bool:
        return self._storage_path.exists()

    def save(
        self,
        registry: RecipientRegistry,
        ledger: PeriodLedger,
        paused: bool,
        administrators: list[str],
        rail_balances: Optional[dict[str, int]] = None,
    ) -> None:
        """Write a full snapshot. Raises OSError on failure.

        rail_balances carries the local vault, so that paid-bits and the
        balances they moved are written in the same atomic rename.
        """
        state = {
            "version": STATE_VERSION,
            "recipients": [
                {
                    "recipient_id": r.recipient_id,
                    "monthly_amount": r.monthly_amount,
                    "role": r.role,
                    "is_active": r.is_active,
                }
                for r in registry.all_recipients()
            ],
            "roster": registry.roster(),
            "periods": [
                {
                    "period_id": p.period_id,
                    "due_utc": p.due_utc.isoformat(),
                    "paid": p.paid,
                    "paid_bits": dict(p.paid_bits),
                    "paid_amounts": dict(p.paid_amounts),
                }
                for p in ledger.all_periods()
            ],
            "paused": paused,
            "administrators": list(administrators),
        }
        if rail_balances is not None:
            state["rail_balances"] = dict(rail_balances)
        tmp_path = self._storage_path.with_suffix(self._storage_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(state, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp_path, self._storage_path)

    def load(self) -> Optional[dict[str, Any]]:
        """Read the raw snapshot, or None if nothing has been saved yet."""
        if not self._storage_path.exists():
            return None
        data = json.loads(self._storage_path.read_text(encoding="utf-8"))
        version = data.get("version")
        if version != STATE_VERSION:
            raise ValueError(f"Unsupported state version: {version}")
        return data

    def load_registry(self, max_monthly_amount: int) -> Optional[RecipientRegistry]:
        data = self.load()
        if data is None:
            return None
        return RecipientRegistry.from_records(
            max_monthly_amount, data["recipients"], data["roster"],
        )

    def load_ledger(self) -> Optional[PeriodLedger]:
        data = self.load()
        if data is None:
            return None
        return PeriodLedger.from_records(data["periods"])

    def load_rail_balances(self) -> Optional[dict[str, int]]:
        """Saved vault balances, or None if none were saved."""
        data = self.load()
        if data is None or "rail_balances" not in data:
            return None
        return {k: int(v) for k, v in data["rail_balances"].items()}
