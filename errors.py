"""Errors raised by the reconciliation engine."""


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""


class InvalidInputError(ReconciliationError):
    """Neither an email nor a phone number was supplied."""

    def __init__(self, message: str = "Email or Phone required"):
        super().__init__(message)
        self.message = message


class PersistenceError(ReconciliationError):
    """A storage operation failed and the transaction was rolled back."""


class InvariantViolationError(ReconciliationError):
    """The cluster ended up without exactly one primary contact."""
