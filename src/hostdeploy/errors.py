from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    NONE = "NONE"
    ACCESS_DENIED = "ACCESS_DENIED"
    NOT_FOUND = "NOT_FOUND"
    IO_ERROR = "IO_ERROR"
    UNSUPPORTED = "UNSUPPORTED"
    INSTALLER_FAILED = "INSTALLER_FAILED"


class SkipReason(str, Enum):
    NONE = "NONE"
    NO_PROFILES_FOUND = "NO_PROFILES_FOUND"
    NOT_APPLICABLE = "NOT_APPLICABLE"


class DeploymentError(ValueError):
    """Hard failure that aborts the run; carries a stable error kind for logs and exit reports."""

    def __init__(self, kind: ErrorKind, message: str, *, hint: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.hint = hint
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.hint:
            payload["hint"] = self.hint
        for key, value in self.context.items():
            if value is not None:
                payload[key] = str(value)
        return payload


def error_kind_for(exc: OSError) -> ErrorKind:
    if isinstance(exc, PermissionError):
        return ErrorKind.ACCESS_DENIED
    if isinstance(exc, FileNotFoundError):
        return ErrorKind.NOT_FOUND
    return ErrorKind.IO_ERROR
