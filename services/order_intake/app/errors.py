from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    SERIALIZATION = "serialization"
    TRANSPORT = "transport"


class OrderServiceError(Exception):
    """A classified failure. Callers branch on ``kind``, not on the type."""

    def __init__(self, kind: ErrorKind, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.reason = reason

    def __repr__(self) -> str:
        return f"OrderServiceError(kind={self.kind.value!r}, reason={self.reason!r}, message={self.message!r})"


def validation_error(message: str) -> OrderServiceError:
    return OrderServiceError(ErrorKind.VALIDATION, message)


def configuration_error(message: str) -> OrderServiceError:
    return OrderServiceError(ErrorKind.CONFIGURATION, message)


def serialization_error(message: str) -> OrderServiceError:
    return OrderServiceError(ErrorKind.SERIALIZATION, message)


def transport_error(reason: str, message: str) -> OrderServiceError:
    return OrderServiceError(ErrorKind.TRANSPORT, message, reason=reason)
