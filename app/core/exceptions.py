from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotFoundError(ServiceError):
    def __init__(self, message: str = "Reimbursement request not found") -> None:
        super().__init__(message, status.HTTP_404_NOT_FOUND)


class InvalidArgumentError(ServiceError):
    """A supplied value violates a field constraint."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class InvalidStateError(ServiceError):
    """The requested transition is not legal from the current status."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class UnauthorizedError(ServiceError):
    def __init__(self, message: str = "Not allowed to act on this reimbursement request") -> None:
        super().__init__(message, status.HTTP_403_FORBIDDEN)


class ConflictError(ServiceError):
    """Concurrent modification still detected after the retry budget was spent."""

    def __init__(self, message: str = "Reimbursement request was modified concurrently, try again") -> None:
        super().__init__(message, status.HTTP_409_CONFLICT)


class TransientError(ServiceError):
    """Persistence or infrastructure failure; nothing was written."""

    def __init__(self, message: str = "Storage temporarily unavailable") -> None:
        super().__init__(message, status.HTTP_503_SERVICE_UNAVAILABLE)
