"""Payment rail abstraction — the funds-movement capability.

The disbursement engine never moves tokens itself. It asks a payment
rail to transfer an amount from the funding source to a recipient and
treats a False return (or any exception) as a failed batch.

Rails come in two flavours:
- PaymentRail: can transfer and report how much the funding source can
  currently supply.
- TransactionalRail: additionally supports savepoint()/rollback_to(), so
  transfers made earlier in a failed batch are undone along with the
  engine's own writes. The in-memory StablecoinVault is transactional;
  an on-chain rail is not (confirmed transfers cannot be recalled).

Adding a rail = implement the Protocol. Zero changes to the engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, runtime_checkable


@runtime_checkable
class PaymentRail(Protocol):
    """Abstract contract for funds-movement backends."""

    @property
    def rail_id(self) -> str:
        """Unique identifier (e.g., 'vault', 'erc20')."""
        ...

    def transfer(self, source: str, to: str, amount: int) -> bool:
        """Move amount base units from source to to. True on success."""
        ...

    def available(self, source: str) -> int:
        """How much source can currently supply through this rail."""
        ...


@runtime_checkable
class TransactionalRail(PaymentRail, Protocol):
    """A rail whose transfers can be rolled back to a savepoint."""

    def savepoint(self) -> int:
        ...

    def rollback_to(self, savepoint: int) -> None:
        ...


@dataclass(frozen=True)
class TransferEntry:
    """One completed vault transfer."""
    source: str
    to: str
    amount: int


class StablecoinVault:
    """In-memory stablecoin balances with a transfer journal.

    Usage:
        vault = StablecoinVault()
        vault.mint("treasury", 10_000_000_000)
        vault.transfer("treasury", "0xabc...", 4_000_000_000)

    Transfers fail (return False) when the source balance is too low or
    the amount is not positive. Balances never go negative.
    """

    def __init__(self, balances: Optional[Dict[str, int]] = None) -> None:
        self._balances: Dict[str, int] = dict(balances or {})
        self._journal: List[TransferEntry] = []

    @property
    def rail_id(self) -> str:
        return "vault"

    def mint(self, account: str, amount: int) -> None:
        """Credit an account out of thin air (funding and tests)."""
        if amount <= 0:
            raise ValueError(f"Mint amount must be positive, got {amount}")
        self._balances[account] = self._balances.get(account, 0) + amount

    def balance_of(self, account: str) -> int:
        return self._balances.get(account, 0)

    def balances(self) -> Dict[str, int]:
        return dict(self._balances)

    def available(self, source: str) -> int:
        return self.balance_of(source)

    def transfer(self, source: str, to: str, amount: int) -> bool:
        if amount <= 0 or self.balance_of(source) < amount:
            return False
        self._balances[source] -= amount
        self._balances[to] = self._balances.get(to, 0) + amount
        self._journal.append(TransferEntry(source=source, to=to, amount=amount))
        return True

    def transfers(self) -> List[TransferEntry]:
        """Every transfer that is still in effect, oldest first."""
        return list(self._journal)

    def savepoint(self) -> int:
        return len(self._journal)

    def rollback_to(self, savepoint: int) -> None:
        """Reverse every transfer made after the savepoint."""
        if savepoint < 0 or savepoint > len(self._journal):
            raise ValueError(f"Unknown savepoint: {savepoint}")
        while len(self._journal) > savepoint:
            entry = self._journal.pop()
            self._balances[entry.to] -= entry.amount
            self._balances[entry.source] = (
                self._balances.get(entry.source, 0) + entry.amount
            )
