from typing import Optional


class AuthError(Exception):
    """Base class for auth-core errors; app.py renders them as JSON."""

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(self, message: str, *, error_code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.error_code}
        body.update(self.details)
        return body


class ValidationError(AuthError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(AuthError):
    """401. Messages stay generic so callers cannot probe which check failed."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Invalid credentials", **kwargs):
        super().__init__(message, **kwargs)


class AuthorizationError(AuthError):
    status_code = 403
    error_code = "forbidden"

    def __init__(self, message: str = "Forbidden", **kwargs):
        super().__init__(message, **kwargs)


class NotFoundError(AuthError):
    status_code = 404
    error_code = "not_found"


class ConflictError(AuthError):
    status_code = 409
    error_code = "conflict"


class LockedError(AuthError):
    """423 with the lock scope and seconds until it lifts."""
    status_code = 423
    error_code = "locked"

    def __init__(self, scope: str, retry_after: int, message: Optional[str] = None):
        if message is None:
            message = (
                "Too many failed attempts from this address. Try again later."
                if scope == "ip"
                else "Account temporarily locked. Try again later."
            )
        super().__init__(message, details={"scope": scope, "retry_after_seconds": retry_after})
        self.scope = scope
        self.retry_after = retry_after


class RateLimitedError(AuthError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after: int, message: str = "Too many requests. Slow down."):
        super().__init__(message, details={"retry_after_seconds": retry_after})
        self.retry_after = retry_after


class TransientInfraError(AuthError):
    """503: a dependency (database, mail) failed where the flow cannot continue without it."""
    status_code = 503
    error_code = "service_unavailable"

    def __init__(self, message: str = "Service temporarily unavailable", **kwargs):
        super().__init__(message, **kwargs)
