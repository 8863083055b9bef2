from typing import List, Optional


class ReconcileError(Exception):
    """Base for every failure a reconcile pass can surface.

    ``requeue`` names the delay class the scheduler applies: ``short`` for
    conditions expected to clear on their own soon (missing objects, unmet
    promotion preconditions, lost write races), ``medium`` for backend trouble.
    """

    status_code = 500
    code = "RECONCILE_ERROR"
    requeue = "medium"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class NotFoundError(ReconcileError):
    status_code = 404
    code = "NOT_FOUND"
    requeue = "short"


class AlreadyExistsError(ReconcileError):
    status_code = 409
    code = "ALREADY_EXISTS"
    requeue = "short"


class ConflictError(ReconcileError):
    status_code = 409
    code = "CONFLICT"
    requeue = "short"


class ValidationFailedError(ReconcileError):
    status_code = 422
    code = "VALIDATION_FAILED"
    requeue = "short"

    NOT_SUCCEEDED = "NOT_SUCCEEDED"
    MISSING_EXTERNAL_ID = "MISSING_EXTERNAL_ID"
    NOT_VALIDATED = "NOT_VALIDATED"
    PRODUCTION_TARGET_INVALID = "PRODUCTION_TARGET_INVALID"

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class TemplateError(ReconcileError):
    status_code = 422
    code = "TEMPLATE_INVALID"
    requeue = "short"


class BackendUnavailableError(ReconcileError):
    status_code = 503
    code = "BACKEND_UNAVAILABLE"
    requeue = "medium"


class PartialFailureError(ReconcileError):
    code = "PARTIAL_FAILURE"
    requeue = "medium"

    def __init__(self, errors: List[Exception], context: str = "") -> None:
        self.errors = list(errors)
        joined = "; ".join(str(error) for error in self.errors)
        prefix = f"{context}: " if context else ""
        super().__init__(f"{prefix}{len(self.errors)} item(s) failed: {joined}")
