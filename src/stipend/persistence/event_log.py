"""Append-only event log — the audit trail of every stipend state change.

Each configuration change, payment, settlement, and failed batch is
appended as an immutable EventRecord. The log can be mirrored to a JSONL
file (one JSON object per line) and reloaded; reload recomputes every
hash and refuses tampered or replayed records.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Classification of stipend events."""
    # Registry
    RECIPIENT_ADDED = "recipient_added"
    RECIPIENT_UPDATED = "recipient_updated"
    RECIPIENT_REMOVED = "recipient_removed"
    # Ledger
    PERIOD_SCHEDULED = "period_scheduled"
    # Disbursement
    PAYMENT_DISBURSED = "payment_disbursed"
    PERIOD_SETTLED = "period_settled"
    BATCH_FAILED = "batch_failed"
    # Governance
    SYSTEM_PAUSED = "system_paused"
    SYSTEM_UNPAUSED = "system_unpaused"
    ADMINISTRATION_TRANSFERRED = "administration_transferred"
    # Local vault
    VAULT_FUNDED = "vault_funded"


def _event_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event.

    event_hash is the SHA-256 of the canonical JSON of every other field.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_event_hash(event_id, event_kind.value, ts_str, actor_id, payload),
        )

    @staticmethod
    def from_dict(data: dict[str, Any]) -> EventRecord:
        """Rebuild a stored record, recomputing its hash.

        Raises ValueError if the stored hash does not match the content.
        """
        expected = _event_hash(
            data["event_id"],
            data["event_kind"],
            data["timestamp_utc"],
            data["actor_id"],
            data["payload"],
        )
        if data["event_hash"] != expected:
            raise ValueError(
                f"event {data['event_id']} stored hash {data['event_hash']} "
                f"!= computed {expected}"
            )
        return EventRecord(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            timestamp_utc=data["timestamp_utc"],
            actor_id=data["actor_id"],
            payload=data["payload"],
            event_hash=expected,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class EventLog:
    """Append-only event log with optional file persistence.

    Events can only be appended, never modified or deleted.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: EventRecord) -> None:
        """Append an event to the log.

        Raises ValueError if event_id is a duplicate (replay protection).
        """
        if event.event_id in self._event_ids:
            raise ValueError(f"Duplicate event ID: {event.event_id}")

        if self._storage_path:
            self._append_to_file(event)
        self._events.append(event)
        self._event_ids.add(event.event_id)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def event_hashes(self, kind: Optional[EventKind] = None) -> list[str]:
        return [e.event_hash for e in self.events(kind)]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def events_for_period(
        self,
        period_id: int,
        kind: Optional[EventKind] = None,
    ) -> list[EventRecord]:
        """Events whose payload names the given period, oldest first."""
        return [
            e for e in self.events(kind)
            if e.payload.get("period_id") == period_id
        ]

    def events_for_recipient(
        self,
        recipient_id: str,
        kind: Optional[EventKind] = None,
    ) -> list[EventRecord]:
        """Events whose payload names the given recipient, oldest first."""
        return [
            e for e in self.events(kind)
            if e.payload.get("recipient_id") == recipient_id
        ]

    def _append_to_file(self, event: EventRecord) -> None:
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Replay a JSONL file, refusing tampered or repeated records."""
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    event = EventRecord.from_dict(json.loads(line))
                except ValueError as e:
                    raise ValueError(f"Integrity check failed (line {line_num}): {e}")
                if event.event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event.event_id}"
                    )
                self._events.append(event)
                self._event_ids.add(event.event_id)
