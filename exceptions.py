class JournalError(Exception):
    """Base class for bookkeeping failures reported back to the caller."""


class ValidationError(JournalError, ValueError):
    """Bad input. Raised before anything is written."""


class DivisionByZeroError(ValidationError, ZeroDivisionError):
    pass


class NotFoundError(JournalError, LookupError):
    pass


class ConflictError(JournalError):
    """The record already exists, or stored data breaks a uniqueness rule."""
