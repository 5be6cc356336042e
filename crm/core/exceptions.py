"""
Core ledger exceptions.

Raised by database.py units of work. Used to distinguish ledger-integrity
failures (retriable server errors) from caller mistakes (validation errors).
"""


class LedgerError(Exception):
    """Base class for ledger unit-of-work failures."""
    pass


class ConsistencyViolationError(LedgerError):
    """A row the transaction depends on vanished mid-transaction.

    The whole payment or enrollment event has been rolled back. Callers must
    surface this as a retriable server error; retrying by the same external
    payment reference is safe.
    """
    pass


class IllegalStatusTransitionError(LedgerError):
    """Rejected subscription_status change (regression to 'added')."""

    def __init__(self, old_status: str, new_status: str):
        self.old_status = old_status
        self.new_status = new_status
        super().__init__(f"Illegal subscription status transition: {old_status} -> {new_status}")


class UnknownUserError(LedgerError):
    """Payment or update references a user_id with no subscription row."""
    pass


class PartnerNotFoundError(LedgerError):
    """Referenced partner id does not resolve to a partner row."""
    pass


class UserAlreadyExistsError(LedgerError):
    """A subscription row with this user_id or email already exists."""
    pass
