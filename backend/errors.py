from typing import Any, Optional


class AppError(Exception):
    """Base class for errors that map onto an HTTP status and envelope code."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        error = {"message": self.message, "code": self.code}
        if self.details is not None:
            error["details"] = self.details
        return error


class ValidationError(AppError):
    """Bad shape, length or type. Always fixable by the caller."""

    status_code = 400
    code = "VALIDATION_ERROR"


class ConflictError(ValidationError):
    """A constraint that only fails once current state is merged in (tag cap)."""

    code = "CONSTRAINT_VIOLATION"


class AuthError(AppError):
    status_code = 401
    code = "AUTH_REQUIRED"


class NotFoundError(AppError):
    """Entity absent, or present but owned by someone else."""

    status_code = 404
    code = "NOT_FOUND"


class DependencyError(AppError):
    """Persistence or generation provider unavailable; the caller should retry."""

    status_code = 502
    code = "DEPENDENCY_ERROR"
