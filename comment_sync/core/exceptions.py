"""
Custom exceptions for the comment synchronization engine.
"""


class ServiceException(Exception):
    """Base exception for comment sync errors."""

    def __init__(self, message: str, code: str = "SERVICE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(self.message)


class NotFoundError(ServiceException):
    """Exception raised when a thread or comment is not found."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, "NOT_FOUND")


class PermissionDeniedError(ServiceException):
    """Exception raised when the actor lacks required permissions."""

    def __init__(self, message: str = "Permission denied", code: str = "PERMISSION_DENIED"):
        super().__init__(message, code)


class ForbiddenError(PermissionDeniedError):
    """Exception raised when mutating another actor's comment."""

    def __init__(self, message: str = "Cannot modify another actor's comment"):
        super().__init__(message, "FORBIDDEN")


class UnauthenticatedError(ServiceException):
    """Exception raised when no authenticated actor is available."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, "UNAUTHENTICATED")


class ValidationError(ServiceException):
    """Exception raised when validation fails."""

    def __init__(self, message: str = "Validation failed"):
        super().__init__(message, "VALIDATION_ERROR")


class DuplicateError(ServiceException):
    """Exception raised when the same submission is already in flight."""

    def __init__(self, message: str = "Submission already in progress"):
        super().__init__(message, "DUPLICATE_ERROR")


class NetworkError(ServiceException):
    """Exception raised when the remote API cannot be reached."""

    def __init__(self, message: str = "Network error", code: str = "NETWORK_ERROR"):
        super().__init__(message, code)


class ServerError(NetworkError):
    """Exception raised when the remote API answers with a server error."""

    def __init__(self, message: str = "Server error", status_code: int = 500):
        self.status_code = status_code
        super().__init__(message, "SERVER_ERROR")


class InternalError(ServiceException):
    """Exception raised for internal engine errors."""

    def __init__(self, message: str = "Internal error"):
        super().__init__(message, "INTERNAL_ERROR")
