"""Service errors carrying an RPC status code."""

from __future__ import annotations

from enum import IntEnum


class StatusCode(IntEnum):
    """RPC status codes used by the services."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class ServiceError(Exception):
    """An error returned to an RPC caller, with a status code and a message."""

    def __init__(self, code: StatusCode, message: str) -> None:
        super().__init__(message)
        self.code = StatusCode(code)
        self.message = message

    @classmethod
    def unavailable(cls, message: str) -> ServiceError:
        return cls(StatusCode.UNAVAILABLE, message)

    @classmethod
    def internal(cls, message: str) -> ServiceError:
        return cls(StatusCode.INTERNAL, message)

    @classmethod
    def unimplemented(cls, message: str) -> ServiceError:
        return cls(StatusCode.UNIMPLEMENTED, message)

    def __str__(self) -> str:
        return f"{self.code.name}: {self.message}"

    def __repr__(self) -> str:
        return f"ServiceError({self.code.name}, {self.message!r})"