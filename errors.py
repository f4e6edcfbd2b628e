"""
Error taxonomy for the identity core.

Services raise these; ``app.create_app`` registers one handler that turns any
``PortalError`` into ``{"error": message, "code": code, **details}`` with the
error's HTTP status.
"""


class PortalError(Exception):
    status = 500
    default_code = "portal_error"

    def __init__(self, message: str, code: str = None, details: dict = None):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)


class ValidationError(PortalError):
    """Malformed input. Message is safe to show as-is."""
    status = 400
    default_code = "validation_error"


class WeakPasswordError(ValidationError):
    default_code = "weak_password"

    def __init__(self, missing: list, requirements: dict):
        super().__init__(
            "Password does not meet policy",
            details={"missing": missing, "requirements": requirements},
        )
        self.missing = missing
        self.requirements = requirements


class AuthenticationError(PortalError):
    """Generic on the wire, detailed in security events."""
    status = 401
    default_code = "authentication_failed"


class InvalidCredentialsError(AuthenticationError):
    default_code = "invalid_credentials"

    def __init__(self):
        super().__init__("Invalid email or password")


class InvalidCodeError(AuthenticationError):
    default_code = "invalid_code"

    def __init__(self, remaining_attempts: int):
        super().__init__(
            "Invalid verification code",
            details={"remaining_attempts": remaining_attempts},
        )
        self.remaining_attempts = remaining_attempts


class CodeExpiredError(AuthenticationError):
    default_code = "code_expired"

    def __init__(self, message: str = "Verification code expired. Request a new one."):
        super().__init__(message)


class AuthorizationError(PortalError):
    status = 403
    default_code = "forbidden"


class NotFoundError(PortalError):
    status = 404
    default_code = "not_found"

    def __init__(self, entity: str, entity_id=None):
        super().__init__(
            f"{entity} not found",
            details={"entity": entity, "id": entity_id} if entity_id is not None else {"entity": entity},
        )


class StateConflictError(PortalError):
    status = 409
    default_code = "state_conflict"


class AlreadyApprovedError(StateConflictError):
    default_code = "already_approved"

    def __init__(self):
        super().__init__("An account already exists for this email. Please sign in instead.")


class RateLimitError(PortalError):
    """Lockouts and ceilings. Never retried by the system."""
    status = 429
    default_code = "rate_limited"

    def __init__(self, message: str, retry_after_seconds: int = None, code: str = None):
        details = {}
        if retry_after_seconds is not None:
            details["retry_after_seconds"] = retry_after_seconds
        super().__init__(message, code=code, details=details)
        self.retry_after_seconds = retry_after_seconds


class AccessBlockedError(RateLimitError):
    default_code = "access_blocked"

    def __init__(self, retry_after_seconds: int = None):
        super().__init__(
            "Access from this address is temporarily blocked. Contact support.",
            retry_after_seconds,
        )


class AccountLockedError(RateLimitError):
    default_code = "account_locked"

    def __init__(self, retry_after_seconds: int = None):
        super().__init__(
            "Account temporarily locked. Try again later.",
            retry_after_seconds,
        )


class AttemptsExhaustedError(RateLimitError):
    default_code = "attempts_exhausted"

    def __init__(self, message: str = "Too many attempts. Request a new code."):
        super().__init__(message)


class DependencyError(PortalError):
    """An outside collaborator (mail, storage) failed."""
    status = 503
    default_code = "dependency_failed"
