"""Error taxonomy shared by the store, service, jobs and HTTP layer."""


class FinanceError(Exception):
    """Base error. `status_code` is the HTTP status the API answers with."""

    status_code = 500
    default_message = "Internal server error"
    code = None  # Machine-readable error code, when clients branch on it

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(FinanceError):
    status_code = 401
    default_message = "Unauthorized"


class NotFound(FinanceError):
    """Resource absent or not owned by the caller."""

    status_code = 404
    default_message = "Not found"


class ValidationFailed(FinanceError):
    status_code = 400
    default_message = "Validation failed"


class EncryptedPdf(ValidationFailed):
    default_message = "PDF is password protected. Please provide the password to unlock."
    code = "encrypted"


class PlanLimitReached(FinanceError):
    status_code = 402
    default_message = "Plan limit reached"
    code = "plan_limit"


class Conflict(FinanceError):
    """Unique-constraint violation, e.g. a duplicate keyword."""

    status_code = 409
    default_message = "Conflict"


class ExternalFailure(FinanceError):
    """PDF extraction or queue send failure."""

    status_code = 502
    default_message = "External service failure"


class InternalError(FinanceError):
    status_code = 500
    default_message = "Internal server error"
