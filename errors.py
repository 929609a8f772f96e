class LedgerError(ValueError):
    """Base class for failures the ledger reports to its callers."""


class ValidationError(LedgerError):
    """Malformed input: empty names, zero amounts, bad date ordering."""


class ConflictError(LedgerError):
    """Business-rule violation such as a duplicate name or blocked delete."""


class NotFoundError(LedgerError):
    """Entity is missing or owned by someone else.

    Both cases share one error so callers cannot probe for foreign ids.
    """


AuthorizationError = NotFoundError


class InternalError(LedgerError):
    """Storage failure. Safe for the caller to retry."""
