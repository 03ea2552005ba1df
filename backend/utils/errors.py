"""
Error taxonomy for the COD reconciliation core.

Each error carries an HTTP status and a machine code so routes can surface it
as an actionable record. Workers decide retry behaviour by type:

- ValidationError      -> skip, never retried
- NotFoundError        -> queued for delayed re-check
- ConflictError        -> retried immediately with fresh state
- ExternalServiceError -> retried with exponential backoff, then fatal
- AlreadyInProgress    -> caller yields, not retried
- CreditLimitExceeded  -> fatal for that batch attempt
"""
from typing import Optional


class CodReconError(Exception):
    status = 500
    code = "INTERNAL_ERROR"
    title = "Internal Server Error"

    def __init__(self, detail: Optional[str] = None, code: Optional[str] = None, **extra):
        self.detail = detail or self.title
        if code:
            self.code = code
        self.extra = extra
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        body = {
            "code": self.code,
            "title": self.title,
            "detail": self.detail,
        }
        if self.extra:
            body.update(self.extra)
        return body


class ValidationError(CodReconError):
    status = 422
    code = "VALIDATION_FAILED"
    title = "Validation Failed"


class NotFoundError(CodReconError):
    status = 404
    code = "NOT_FOUND"
    title = "Not Found"


class ConflictError(CodReconError):
    status = 409
    code = "CONFLICT"
    title = "Conflict"


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"


class AlreadyInProgress(CodReconError):
    status = 409
    code = "ALREADY_IN_PROGRESS"
    title = "Already In Progress"


class CreditLimitExceeded(CodReconError):
    status = 422
    code = "CREDIT_LIMIT_EXCEEDED"
    title = "Credit Limit Exceeded"


class ExternalServiceError(CodReconError):
    status = 502
    code = "EXTERNAL_SERVICE_ERROR"
    title = "Bad Gateway"


class ExternalTimeoutError(ExternalServiceError):
    status = 504
    code = "EXTERNAL_TIMEOUT"
    title = "Gateway Timeout"


class PayoutError(CodReconError):
    """Definitive rejection by the payout provider."""
    status = 502
    code = "PAYOUT_FAILED"
    title = "Payout Failed"


class CodUnavailable(CodReconError):
    """Customer-facing block; never carries the risk reasoning."""
    status = 403
    code = "COD_UNAVAILABLE"
    title = "Payment Method Unavailable"

    PUBLIC_MESSAGE = "Cash on delivery is unavailable for this order"

    def __init__(self):
        super().__init__(self.PUBLIC_MESSAGE)
