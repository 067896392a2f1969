"""Persistence — audit event log and state snapshots."""

from stipend.persistence.event_log import EventKind, EventLog, EventRecord
from stipend.persistence.state_store import StateStore

__all__ = ["EventKind", "EventLog", "EventRecord", "StateStore"]
