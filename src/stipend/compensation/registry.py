"""Recipient registry — who is paid, how much, and whether they are active.

The registry is the only writer of recipient records. It keeps:
- a map of recipient_id → Recipient (the source of truth for activity)
- an insertion-ordered roster index of every identifier ever added

Removal is a soft delete: the record stays, is_active flips to False,
and the identifier stays in the roster index. Re-adding a removed
recipient overwrites the record as active without duplicating the index
entry.

Identifiers are canonicalised before use: surrounding whitespace is
stripped and 0x-prefixed hex addresses are lower-cased, so checksummed
and plain spellings of the same address name the same recipient.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from stipend.errors import (
    AlreadyActiveError,
    InvalidAmountError,
    InvalidIdentifierError,
    NotActiveError,
)
from stipend.models.stipend import Recipient

ZERO_ADDRESS = "0x" + "0" * 40


def canonical_id(recipient_id: str) -> str:
    """Return the canonical spelling of a recipient identifier."""
    cid = recipient_id.strip()
    if cid[:2].lower() == "0x":
        cid = cid.lower()
    return cid


def is_null_identity(recipient_id: str) -> bool:
    """The null identity is a blank identifier or the all-zero address."""
    cid = canonical_id(recipient_id)
    if not cid:
        return True
    if cid.startswith("0x"):
        digits = cid[2:]
        return not digits or set(digits) == {"0"}
    return False


class RecipientRegistry:
    """Registry of stipend recipients.

    Usage:
        registry = RecipientRegistry(max_monthly_amount=10_000_000_000)
        registry.add_recipient("0xabc...", 4_000_000_000, "Regular Steward")
        registry.update_recipient("0xabc...", 4_500_000_000, "Senior Steward")
        registry.remove_recipient("0xabc...")

    Thread-safety: this class is not thread-safe. The service layer
    serialises access.
    """

    def __init__(self, max_monthly_amount: int) -> None:
        if max_monthly_amount <= 0:
            raise ValueError(
                f"max_monthly_amount must be positive, got {max_monthly_amount}"
            )
        self._max_monthly_amount = max_monthly_amount
        self._recipients: Dict[str, Recipient] = {}
        # dict preserves insertion order; values unused
        self._roster: Dict[str, None] = {}

    @classmethod
    def from_records(
        cls,
        max_monthly_amount: int,
        recipients: Iterable[dict],
        roster: Iterable[str],
    ) -> RecipientRegistry:
        """Restore registry state from persisted records."""
        registry = cls(max_monthly_amount)
        for r in recipients:
            recipient = Recipient(
                recipient_id=r["recipient_id"],
                monthly_amount=int(r["monthly_amount"]),
                role=r["role"],
                is_active=bool(r["is_active"]),
            )
            registry._recipients[recipient.recipient_id] = recipient
        for rid in roster:
            registry._roster[rid] = None
        return registry

    @property
    def max_monthly_amount(self) -> int:
        return self._max_monthly_amount

    def add_recipient(self, recipient_id: str, amount: int, role: str) -> Recipient:
        """Register a recipient, or reactivate a removed one.

        Raises:
            InvalidIdentifierError: recipient_id is the null identity.
            InvalidAmountError: amount is not in (0, max_monthly_amount].
            AlreadyActiveError: recipient is currently active.
        """
        if is_null_identity(recipient_id):
            raise InvalidIdentifierError(
                f"Recipient identifier must not be null: {recipient_id!r}"
            )
        self._check_amount(amount)
        rid = canonical_id(recipient_id)
        existing = self._recipients.get(rid)
        if existing is not None and existing.is_active:
            raise AlreadyActiveError(f"Recipient already active: {rid}")

        recipient = Recipient(
            recipient_id=rid,
            monthly_amount=amount,
            role=role,
            is_active=True,
        )
        self._recipients[rid] = recipient
        if rid not in self._roster:
            self._roster[rid] = None
        return recipient

    def update_recipient(self, recipient_id: str, amount: int, role: str) -> Recipient:
        """Change an active recipient's monthly amount and role.

        Raises:
            NotActiveError: recipient is unknown or removed.
            InvalidAmountError: amount is not in (0, max_monthly_amount].
        """
        recipient = self._get_active(recipient_id)
        self._check_amount(amount)
        recipient.monthly_amount = amount
        recipient.role = role
        return recipient

    def remove_recipient(self, recipient_id: str) -> Recipient:
        """Deactivate a recipient. The record and its history remain.

        Raises:
            NotActiveError: recipient is unknown or already removed.
        """
        recipient = self._get_active(recipient_id)
        recipient.is_active = False
        return recipient

    def get(self, recipient_id: str) -> Optional[Recipient]:
        """Look up a recipient record, active or not."""
        return self._recipients.get(canonical_id(recipient_id))

    def is_active(self, recipient_id: str) -> bool:
        recipient = self.get(recipient_id)
        return recipient is not None and recipient.is_active

    def roster(self) -> List[str]:
        """Every identifier ever added, in first-insertion order."""
        return list(self._roster)

    def active_recipients(self) -> List[Recipient]:
        """Active recipients in roster order."""
        return [
            self._recipients[rid]
            for rid in self._roster
            if self._recipients[rid].is_active
        ]

    def all_recipients(self) -> List[Recipient]:
        """All recipient records in roster order."""
        return [self._recipients[rid] for rid in self._roster]

    def _check_amount(self, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidAmountError(
                f"Monthly amount must be an integer, got {type(amount).__name__}"
            )
        if amount <= 0:
            raise InvalidAmountError(f"Monthly amount must be positive, got {amount}")
        if amount > self._max_monthly_amount:
            raise InvalidAmountError(
                f"Monthly amount {amount} exceeds cap {self._max_monthly_amount}"
            )

    def _get_active(self, recipient_id: str) -> Recipient:
        recipient = self.get(recipient_id)
        if recipient is None or not recipient.is_active:
            raise NotActiveError(f"Recipient not active: {canonical_id(recipient_id)}")
        return recipient
