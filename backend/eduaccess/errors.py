"""
Domain errors raised by the service layer.

Each error carries the HTTP status it maps to; the exception handler
registered in main renders them as {"detail": message}.
"""
from fastapi import status


class EduAccessError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(EduAccessError):
    """Malformed or missing input."""
    status_code = status.HTTP_400_BAD_REQUEST


class NotFound(EduAccessError):
    status_code = status.HTTP_404_NOT_FOUND


class Forbidden(EduAccessError):
    """Authenticated but not allowed to perform the action."""
    status_code = status.HTTP_403_FORBIDDEN


class InvalidTransition(EduAccessError):
    """Moderation state machine precondition violated."""
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, current_status: str, target_status: str, message: str = None):
        super().__init__(
            message or f"Cannot move resource from '{current_status}' to '{target_status}'"
        )
        self.current_status = current_status
        self.target_status = target_status


class StorageFailure(EduAccessError):
    """The byte store is unavailable or an I/O operation failed."""
    status_code = status.HTTP_502_BAD_GATEWAY


class Conflict(EduAccessError):
    """Uniqueness violation. The download path treats it as a no-op."""
    status_code = status.HTTP_409_CONFLICT
