"""Custom exceptions for SplitLedger."""


class SplitLedgerError(Exception):
    """Base exception for all SplitLedger errors."""

    pass


class ConfigurationError(SplitLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


class ValidationError(SplitLedgerError):
    """Raised when input is malformed or out of range.

    Always raised before any mutation, so nothing is partially applied.
    """

    pass


class InvalidPolicyInput(ValidationError):
    """Raised when a split policy cannot be applied to the given input."""

    pass


class PercentageSumMismatch(InvalidPolicyInput):
    """Raised when split percentages do not add up to 100."""

    def __init__(self, total, tolerance, message: str | None = None):
        self.total = total
        self.tolerance = tolerance
        super().__init__(
            message
            or f"Percentages must sum to 100 (within {tolerance}), got {total}"
        )


class NotFoundError(SplitLedgerError):
    """Raised when a referenced expense or share does not exist."""

    pass


class ForbiddenError(SplitLedgerError):
    """Raised when the actor is not allowed to perform a mutation."""

    pass


class InvariantViolation(SplitLedgerError):
    """Raised when a post-condition on computed shares fails.

    This indicates a bug in share computation, not bad user input. The
    triggering mutation is always rolled back.
    """

    def __init__(self, expense_id: int | None, message: str):
        self.expense_id = expense_id
        super().__init__(message)
