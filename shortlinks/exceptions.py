"""Error taxonomy for short-link operations.

Every error carries a stable machine-readable ``code`` and the HTTP status it
maps to, so the API layer can render it without inspecting the message.

Classes:
    ShortLinkError:
        Base class for all service errors.

    InvalidInputError:
        Malformed or out-of-policy request data.

    UnauthorizedError:
        A bearer credential was supplied but could not be verified.

    ForbiddenError:
        The caller does not own the record it tried to change.

    NotFoundError:
        The short code is absent or expired.

    CodeConflictError:
        A custom code is already used by a live record.

    RateLimitedError:
        The client exceeded its request window.

    AllocationExhaustedError:
        Random code generation hit repeated collisions. Safe to retry.

    StoreUnavailableError:
        The store connection is not in the connected state. Safe to retry.

    StoreTimeoutError:
        A store call exceeded its time bound. Safe to retry.

Example:
    >>> from shortlinks.exceptions import NotFoundError
    >>> raise NotFoundError("Short link 'abc' not found")
    Traceback (most recent call last):
        ...
    shortlinks.exceptions.NotFoundError: Short link 'abc' not found
"""

__all__ = [
    "ShortLinkError",
    "InvalidInputError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "CodeConflictError",
    "RateLimitedError",
    "AllocationExhaustedError",
    "StoreUnavailableError",
    "StoreTimeoutError",
]


class ShortLinkError(Exception):
    """Generic base class for short-link service errors."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInputError(ShortLinkError):
    code = "INVALID_INPUT"
    status_code = 400
    default_message = "Invalid input"


class UnauthorizedError(ShortLinkError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Invalid or missing credentials"


class ForbiddenError(ShortLinkError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Not authorized to modify this short link"


class NotFoundError(ShortLinkError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Short link not found"


class CodeConflictError(ShortLinkError):
    code = "CODE_CONFLICT"
    status_code = 409
    default_message = "Custom code is already in use"


class RateLimitedError(ShortLinkError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    retryable = True
    default_message = "Too many requests, please try again later"


class AllocationExhaustedError(ShortLinkError):
    code = "ALLOCATION_EXHAUSTED"
    status_code = 503
    retryable = True
    default_message = "Could not allocate a unique short code, please retry"


class StoreUnavailableError(ShortLinkError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
    retryable = True
    default_message = "Store is unavailable, please retry"


class StoreTimeoutError(ShortLinkError):
    code = "TIMEOUT"
    status_code = 504
    retryable = True
    default_message = "Store call timed out, please retry"
