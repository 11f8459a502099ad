from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    VALIDATION = (400, "Invalid request")
    AUTH = (401, "Authentication failed")
    FORBIDDEN = (403, "Not allowed")
    NOT_FOUND = (404, "Not found")
    CONFLICT = (409, "Conflict")
    INTERNAL = (500, "Something went wrong")

    @property
    def status(self) -> int:
        return self.value[0]

    @property
    def title(self) -> str:
        return self.value[1]


class PixBoardError(Exception):
    """A failure that is rendered back to the visitor instead of crashing the request."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def status(self) -> int:
        return self.kind.status
