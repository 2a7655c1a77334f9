from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    NETWORK = "network"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    ADMISSION_DENIED = "admission_denied"
    PERMANENT = "permanent"


class RemoteError(Exception):
    """Failure reported by the remote data service, tagged with its kind."""

    kind = ErrorKind.PERMANENT

    def __init__(self, message: str, code: str = None, status: int = None):
        self.message = message
        self.code = code
        self.status = status
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return self.kind == ErrorKind.NETWORK


class NetworkError(RemoteError):
    kind = ErrorKind.NETWORK


class RemoteConflict(RemoteError):
    kind = ErrorKind.CONFLICT


class ValidationError(RemoteError):
    kind = ErrorKind.VALIDATION


class PermanentFailure(RemoteError):
    kind = ErrorKind.PERMANENT


class UnknownOperationError(PermanentFailure):
    def __init__(self, operation_kind: str, reason: str = None):
        self.operation_kind = operation_kind
        super().__init__(reason or f"Unknown operation type: {operation_kind}")


class MalformedOperationError(PermanentFailure):
    pass


class AdmissionDenied(Exception):
    kind = ErrorKind.ADMISSION_DENIED

    def __init__(self, devices: List = None, limit: int = None):
        self.devices = list(devices or [])
        self.limit = limit
        super().__init__(
            f"Device limit reached ({len(self.devices)} active devices). "
            "Remove a device to continue."
        )


class AccountCreationFailed(Exception):
    title = "Account Creation Failed"

    def __init__(self, reason: str = "Profile setup failed. Please try again.",
                 user_id: Optional[str] = None):
        self.reason = reason
        self.user_id = user_id
        super().__init__(reason)


class AuthInProgressError(Exception):
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Another authentication request is already running ({operation})")


class StorageError(Exception):
    def __init__(self, key: str, reason: str = None):
        self.key = key
        self.reason = reason or f"Failed to persist '{key}'"
        super().__init__(self.reason)
