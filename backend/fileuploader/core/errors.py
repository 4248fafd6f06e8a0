from enum import Enum

from fastapi import status


class ErrorKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    INVALID_REQUEST = "invalid_request"
    INVALID_TYPE = "invalid_type"
    FILE_TOO_LARGE = "file_too_large"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    INTERNAL = "internal"
    UNAVAILABLE = "unavailable"


STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
    ErrorKind.INVALID_TYPE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.FILE_TOO_LARGE: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class AppError(Exception):
    """Failure surfaced to API clients.

    ``message`` is safe to show to the caller. ``cause`` keeps the underlying
    exception for logs only and is never rendered into a response.
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: str | None = None,
        *,
        cause: BaseException | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.cause = cause
        self.headers = headers
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class UnauthenticatedError(AppError):
    kind = ErrorKind.UNAUTHENTICATED
    default_message = "Unauthorized"

    def __init__(self, message: str | None = None, *, cause: BaseException | None = None) -> None:
        super().__init__(message, cause=cause, headers={"WWW-Authenticate": "Bearer"})


class InvalidRequestError(AppError):
    kind = ErrorKind.INVALID_REQUEST
    default_message = "Bad request"


class InvalidFileTypeError(AppError):
    kind = ErrorKind.INVALID_TYPE
    default_message = "Invalid file type"


class FileTooLargeError(AppError):
    kind = ErrorKind.FILE_TOO_LARGE
    default_message = "File too large"


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND
    default_message = "File not found"


class RateLimitedError(AppError):
    kind = ErrorKind.RATE_LIMITED
    default_message = "Rate limit exceeded"

    def __init__(self, retry_after: float = 0.0) -> None:
        headers = {"Retry-After": str(max(1, int(retry_after + 0.999)))}
        super().__init__(headers=headers)


class InternalError(AppError):
    kind = ErrorKind.INTERNAL
    default_message = "Internal server error"


class ServiceUnavailableError(AppError):
    kind = ErrorKind.UNAVAILABLE
    default_message = "Service not ready"
