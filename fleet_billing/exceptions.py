"""Exception hierarchy for the billing ledger."""


class BillingError(Exception):
    """Base exception for all billing ledger errors."""


class ValidationError(BillingError, ValueError):
    """Raised when calculator or operation inputs are invalid."""


class InvalidQuotaTransition(ValidationError):
    """Raised when a quota status change is not in the transition table."""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(
            f"Quota cannot move from {getattr(current, 'value', current)} "
            f"to {getattr(target, 'value', target)}"
        )


class InvalidFinancingStatus(ValidationError):
    """Raised when a financing status override would break its invariants."""


class FinancingNotFoundError(BillingError, LookupError):
    """Raised when a financing id does not resolve."""


class QuotaNotFoundError(BillingError, LookupError):
    """Raised when a quota record does not resolve."""


class ConcurrencyConflictError(BillingError):
    """Raised when a conditional financing update observes a stale version."""

    def __init__(self, financing_id: str, expected_version: int, actual_version: int):
        self.financing_id = financing_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Financing {financing_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
