"""Stipend error kinds.

Every failure the engine can report is a subclass of StipendError, which
is itself a ValueError so callers that only care about "rejected input"
can keep catching ValueError.

None of these are retried internally. A failed disbursement batch keeps
only the payments its rail cannot reverse (see TransferFailedError), and
the caller resubmits once the cause is fixed.
"""

from __future__ import annotations


class StipendError(ValueError):
    """Base class for all stipend engine errors."""


class InvalidIdentifierError(StipendError):
    """Recipient identifier is the null identity."""


class InvalidAmountError(StipendError):
    """Monthly amount is zero, negative, or above the configured cap."""


class AlreadyActiveError(StipendError):
    """Recipient is already active."""


class NotActiveError(StipendError):
    """Recipient is not active."""


class NotFutureError(StipendError):
    """Period due time is not strictly in the future."""


class AlreadySettledError(StipendError):
    """Attempt to reschedule a period that has already been settled."""


class UnknownPeriodError(StipendError):
    """Period was never scheduled."""


class PeriodSettledError(StipendError):
    """Attempt to disburse against a period that has already been settled."""


class TooEarlyError(StipendError):
    """Period is not yet due."""


class SystemPausedError(StipendError):
    """Disbursement is paused by the administrator."""


class TransferFailedError(StipendError):
    """The payment rail did not complete a transfer; the batch was aborted.

    completed holds the payments that stand despite the failure: empty for
    transactional rails, which reverse the whole batch, and the transfers
    already made for rails that cannot recall them.
    """

    def __init__(self, message: str, completed: tuple = ()) -> None:
        super().__init__(message)
        self.completed = tuple(completed)


class TransferUnconfirmedError(TransferFailedError):
    """A transfer was broadcast but not confirmed in time.

    It may still settle, so the recipient stays marked as paid.
    """


class NotAuthorizedError(StipendError):
    """Caller is not an administrator."""
