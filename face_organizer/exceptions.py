"""
Errors raised by the Face Organizer service layer.
"""


class FaceOrganizerError(Exception):
    """Base class for all service errors."""


class PersistenceFailure(FaceOrganizerError):
    """A storage call failed; the whole operation was rolled back."""

    def __init__(self, operation: str, user_id: str, cause: Exception):
        self.operation = operation
        self.user_id = user_id
        self.cause = cause
        super().__init__(f"{operation} failed for user '{user_id}': {cause}")


class OperationTimeout(FaceOrganizerError):
    """The caller's time budget ran out; the operation was cancelled and rolled back."""

    def __init__(self, operation: str, user_id: str, timeout: float):
        self.operation = operation
        self.user_id = user_id
        self.timeout = timeout
        super().__init__(f"{operation} for user '{user_id}' exceeded {timeout:.1f}s")
