"""Administrative authority and the disbursement pause switch.

One authority configures the system: it manages recipients, schedules
periods, and pauses or resumes disbursement. Disbursement itself is
open to any caller and is gated only by the pause switch.

Pause is an admission gate on process_batch, nothing more. Recipient
and period configuration keep working while paused.
"""

from __future__ import annotations

from typing import Iterable, List

from stipend.compensation.registry import canonical_id, is_null_identity
from stipend.errors import InvalidIdentifierError, NotAuthorizedError


class AdministratorGate:
    """Capability check for administrative operations.

    Usage:
        gate = AdministratorGate(["0xadmin..."])
        gate.require("0xadmin...")              # passes
        gate.require("0xsomeone_else...")       # raises NotAuthorizedError
    """

    def __init__(self, administrators: Iterable[str]) -> None:
        admins = [canonical_id(a) for a in administrators]
        if not admins:
            raise ValueError("At least one administrator is required")
        for admin in admins:
            if is_null_identity(admin):
                raise InvalidIdentifierError("Administrator identifier must not be null")
        self._administrators: List[str] = list(dict.fromkeys(admins))

    @property
    def administrators(self) -> List[str]:
        return list(self._administrators)

    def is_administrator(self, caller: str) -> bool:
        return canonical_id(caller) in self._administrators

    def require(self, caller: str) -> None:
        if not self.is_administrator(caller):
            raise NotAuthorizedError(f"Caller is not an administrator: {caller}")

    def transfer(self, caller: str, new_administrator: str) -> None:
        """Hand the caller's authority to a new identity.

        The caller loses administrator rights; the new identity gains them.
        """
        self.require(caller)
        if is_null_identity(new_administrator):
            raise InvalidIdentifierError("Administrator identifier must not be null")
        old = canonical_id(caller)
        new = canonical_id(new_administrator)
        self._administrators = [a for a in self._administrators if a != old]
        if new not in self._administrators:
            self._administrators.append(new)


class PauseSwitch:
    """Process-wide pause flag read by the disbursement engine."""

    def __init__(self, paused: bool = False) -> None:
        self._paused = paused

    def is_paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        self._paused = True

    def unpause(self) -> None:
        self._paused = False
