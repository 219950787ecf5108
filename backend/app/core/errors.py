"""API error classes.

HTTP status codes and machine-readable error codes for every failure the
timeclock surfaces to callers.

WHY CUSTOM ERROR CLASSES:
- Consistent error response format across all endpoints
- Easy to map to HTTP status codes in exception handlers
- Type-safe error handling in services/repositories
"""


class APIError(Exception):
    """Base class for API errors.

    All API errors have a code, message, and HTTP status.
    Subclasses set default status_code.

    Attributes:
        code: Machine-readable error code (e.g., "NOT_FOUND").
        message: Human-readable error message.
        status_code: HTTP status code to return.
        details: Optional list of additional error details.
        headers: Optional extra response headers (e.g., Retry-After).
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: list[dict] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        self.headers = headers
        super().__init__(message)


class ValidationError(APIError):
    """Field validation failed (400).

    Use for request body validation errors, query param errors, etc.
    """

    def __init__(
        self,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=400,
            details=details,
        )


class ForbiddenError(APIError):
    """Not allowed to access resource (403).

    Use when auth is valid but user lacks permission.
    """

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(
            code="FORBIDDEN",
            message=message,
            status_code=403,
        )


class NotEligibleError(ForbiddenError):
    """Caller has no active contractor profile (403).

    Raised before any audit write: there is no contractor to attribute
    the attempt to.
    """

    def __init__(self) -> None:
        APIError.__init__(
            self,
            code="NOT_ELIGIBLE",
            message="Not authorized for the timeclock.",
            status_code=403,
        )


class NotFoundError(APIError):
    """Resource not found (404).

    Use when requested resource doesn't exist OR doesn't belong to user.

    WHY NOT SEPARATE "FORBIDDEN" FOR WRONG OWNERSHIP:
    - Revealing "exists but not yours" leaks information
    - From user perspective, resource simply doesn't exist
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(
            code="NOT_FOUND",
            message=message,
            status_code=404,
        )


class ConflictError(APIError):
    """Duplicate or conflicting resource (409).

    Use for duplicate entries, conflicting state, etc.
    Accepts custom code for specific conflict types.
    """

    def __init__(
        self,
        code: str,
        message: str,
        details: list[dict] | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details,
        )


class InvalidStateError(APIError):
    """Business rule violation (422).

    Use when request is syntactically valid but violates business rules.
    E.g., signing an event that is not a clock-out.
    """

    def __init__(self, message: str) -> None:
        super().__init__(
            code="INVALID_STATE_TRANSITION",
            message=message,
            status_code=422,
        )


class PunchBlockedError(APIError):
    """Punch rejected by one of the gates (403).

    The error code is the block reason. The audit row has already been
    written; its id is returned so support can trace the attempt.

    Args:
        reason: Block reason code (e.g., "OUT_OF_RANGE").
        message: Human-readable explanation for the worker.
        event_id: Id of the BLOCKED audit event.
    """

    def __init__(self, reason: str, message: str, event_id: str) -> None:
        super().__init__(
            code=reason,
            message=message,
            status_code=403,
            details=[{"event_id": event_id}],
        )


class PunchRateLimitedError(APIError):
    """Punch rejected by the sliding-window throttle (429).

    Args:
        retry_after_seconds: Seconds until the earliest window frees up.
        event_id: Id of the BLOCKED audit event.
    """

    def __init__(self, retry_after_seconds: int, event_id: str) -> None:
        super().__init__(
            code="RATE_LIMITED",
            message="Too many clock attempts. Try again shortly.",
            status_code=429,
            details=[
                {"event_id": event_id, "retry_after_seconds": retry_after_seconds}
            ],
            headers={"Retry-After": str(retry_after_seconds)},
        )
