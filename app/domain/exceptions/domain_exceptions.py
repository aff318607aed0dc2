"""Domain-specific exceptions.

These exceptions represent failures the capture pipeline knows how to name.
The error classifier maps each of them onto a user-facing category.
"""


class DomainException(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        """Initialize domain exception.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidUrlError(DomainException):
    """Raised when a submitted URL cannot be parsed into a host-bearing URL."""

    pass


class DuplicateLinkError(DomainException):
    """Raised when the store rejects a link whose canonical URL the owner already saved."""

    CONSTRAINT = "unique_user_normalized_url"
    CODE = "23505"

    def __init__(self, canonical_url: str, owner_id: str, details: dict | None = None) -> None:
        super().__init__(
            f'duplicate key value violates unique constraint "{self.CONSTRAINT}" ({self.CODE})',
            details={"canonical_url": canonical_url, "owner_id": owner_id, **(details or {})},
        )
        self.canonical_url = canonical_url
        self.owner_id = owner_id


class AuthExpiredError(DomainException):
    """Raised when an operation needs an authenticated session and none is present."""

    def __init__(self, message: str = "User must be authenticated", details: dict | None = None):
        super().__init__(message, details)


class PermissionDeniedError(DomainException):
    """Raised when the store refuses access to a row owned by someone else."""

    pass


class LinkNotFoundError(DomainException):
    """Raised when a requested link does not exist."""

    pass


class ExtractionError(DomainException):
    """Raised when page metadata cannot be extracted.

    ``reason`` is one of ``timeout``, ``transport``, ``upstream_status`` or
    ``parse``.
    """

    def __init__(
        self,
        message: str,
        *,
        reason: str = "upstream_status",
        status_code: int | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message, details)
        self.reason = reason
        self.status_code = status_code


class RetryExhaustedError(DomainException):
    """Raised when a bounded retry gives up; ``last_error`` holds the final failure."""

    def __init__(self, message: str, last_error: BaseException, attempts: int) -> None:
        super().__init__(message, details={"attempts": attempts})
        self.last_error = last_error
        self.attempts = attempts
