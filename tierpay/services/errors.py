"""Payment error taxonomy.

Error codes surfaced to callers:
    VALIDATION_FAILED  caller error, nothing written, not retried
    DB_ERROR           store failure before any gateway call, safe to retry
    GATEWAY_ERROR      adapter call failed/rejected/timed out, row marked failed
    TIMEOUT            processing exceeded the reconciliation deadline
"""

VALIDATION_FAILED = "VALIDATION_FAILED"
DB_ERROR = "DB_ERROR"
GATEWAY_ERROR = "GATEWAY_ERROR"
TIMEOUT = "TIMEOUT"
NOT_FOUND = "NOT_FOUND"
INTERNAL_ERROR = "INTERNAL_ERROR"


class PaymentsError(Exception):
    code = INTERNAL_ERROR

    def __init__(self, message, code=None, details=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class ValidationError(PaymentsError):
    code = VALIDATION_FAILED


class UnknownTierError(ValidationError):
    pass


class StoreError(PaymentsError):
    code = DB_ERROR


class DuplicateActiveTransaction(StoreError):
    """Insert lost to an existing pending/processing row (store constraint)."""

    def __init__(self, existing):
        super().__init__("An upgrade for this tier is already in progress")
        self.existing = existing


class GatewayError(PaymentsError):
    """A gateway call failed. `message` is safe to show to the user."""

    code = GATEWAY_ERROR


class SignatureError(PaymentsError):
    """Webhook signature missing or wrong. Never shown to users."""


class InvalidTransition(PaymentsError):
    """A status move the lifecycle does not allow (e.g. refunding a failed tx)."""

    code = VALIDATION_FAILED


class TierUpdateError(PaymentsError):
    pass


class TransactionNotFound(PaymentsError):
    code = NOT_FOUND
