"""Errors raised by the blood request and donation lifecycles.

All of them are recoverable by the caller. They are raised before any
change is committed, so a failed command never leaves a partial write.
"""


class BloodBankError(Exception):
    """Base class for lifecycle errors."""
    pass


class ValidationError(BloodBankError):
    """Malformed or out-of-range input."""
    pass


class NotFoundError(BloodBankError):
    """Referenced request, donation or user does not exist."""
    pass


class AuthorizationError(BloodBankError):
    """Actor lacks the role or ownership required for the action."""
    pass


class DuplicateResponseError(BloodBankError):
    """A second response (or feedback) for the same pair was submitted."""
    pass


class IllegalTransitionError(BloodBankError):
    """Requested transition is not legal from the record's current state."""

    def __init__(self, message: str, current_status: str):
        super().__init__(message)
        self.current_status = current_status

    def __str__(self):
        return f"{self.args[0]} (current status: {self.current_status})"
