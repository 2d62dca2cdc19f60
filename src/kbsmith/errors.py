"""Error codes, the KBError exception and result types.

Codes are grouped by prefix:

- E1xx: input validation
- E2xx: provider, auth and rate limits (the only retryable family)
- E3xx: state and storage
- E4xx: configuration
- E5xx: internal

Collaborators raise ``KBError``. Operations that callers are expected to
branch on (orchestrator steps, duplicate store transitions, snapshots) return
``Ok`` or ``Err`` instead. Best-effort steps return ``SoftFailure`` so a
non-fatal problem can never be passed along as a pipeline failure.
"""

from __future__ import annotations

import errno
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Stable error codes surfaced in pipeline contexts and CLI output."""

    E101_INVALID_INPUT = "E101_INVALID_INPUT"
    E102_MISSING_FIELD = "E102_MISSING_FIELD"

    E201_PROVIDER_TIMEOUT = "E201_PROVIDER_TIMEOUT"
    E202_RATE_LIMITED = "E202_RATE_LIMITED"
    E203_INVALID_API_KEY = "E203_INVALID_API_KEY"
    E204_PROVIDER_ERROR = "E204_PROVIDER_ERROR"
    E210_MODEL_OUTPUT_PARSE_FAILED = "E210_MODEL_OUTPUT_PARSE_FAILED"
    E211_MODEL_SCHEMA_VIOLATION = "E211_MODEL_SCHEMA_VIOLATION"

    E301_FILE_NOT_FOUND = "E301_FILE_NOT_FOUND"
    E302_PERMISSION_DENIED = "E302_PERMISSION_DENIED"
    E303_DISK_FULL = "E303_DISK_FULL"
    E304_SNAPSHOT_FAILED = "E304_SNAPSHOT_FAILED"
    E310_INVALID_STATE = "E310_INVALID_STATE"
    E311_NOT_FOUND = "E311_NOT_FOUND"
    E320_TASK_CONFLICT = "E320_TASK_CONFLICT"

    E401_PROVIDER_NOT_CONFIGURED = "E401_PROVIDER_NOT_CONFIGURED"
    E404_TEMPLATE_NOT_FOUND = "E404_TEMPLATE_NOT_FOUND"
    E405_INVALID_CONFIG = "E405_INVALID_CONFIG"
    E406_TEMPLATE_INVALID = "E406_TEMPLATE_INVALID"

    E500_INTERNAL_ERROR = "E500_INTERNAL_ERROR"


# Model output problems are usually fixed by asking again
MODEL_OUTPUT_CODES = frozenset(
    {
        ErrorCode.E210_MODEL_OUTPUT_PARSE_FAILED,
        ErrorCode.E211_MODEL_SCHEMA_VIOLATION,
    }
)

# Transient provider failures; auth failures are permanent
PROVIDER_TRANSIENT_CODES = frozenset(
    {
        ErrorCode.E201_PROVIDER_TIMEOUT,
        ErrorCode.E202_RATE_LIMITED,
        ErrorCode.E204_PROVIDER_ERROR,
    }
)

RETRYABLE_CODES = MODEL_OUTPUT_CODES | PROVIDER_TRANSIENT_CODES


class KBError(Exception):
    """An error with a stable code, a human message and optional details."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        return f"KBError({self.code.value}, {self.message!r})"

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data

    def to_json(self) -> str:
        return json.dumps({"error": self.to_dict()}, default=str)

    # Convenience constructors for the common cases

    @classmethod
    def not_found(cls, what: str, identifier: str) -> KBError:
        return cls(ErrorCode.E311_NOT_FOUND, f"{what} not found: {identifier}", {what: identifier})

    @classmethod
    def file_not_found(cls, path: str) -> KBError:
        return cls(ErrorCode.E301_FILE_NOT_FOUND, f"File not found: {path}", {"path": path})

    @classmethod
    def invalid_state(cls, message: str, **details: Any) -> KBError:
        return cls(ErrorCode.E310_INVALID_STATE, message, details)

    @classmethod
    def conflict(cls, message: str, **details: Any) -> KBError:
        return cls(ErrorCode.E320_TASK_CONFLICT, message, details)

    @classmethod
    def internal(cls, exc: BaseException) -> KBError:
        return cls(
            ErrorCode.E500_INTERNAL_ERROR,
            f"Unexpected error: {exc}",
            {"exception": type(exc).__name__},
        )

    @classmethod
    def from_os_error(cls, exc: OSError, path: str | None = None) -> KBError:
        """Map an OSError raised by file access to a storage code."""
        target = path or exc.filename or ""
        details = {"path": str(target)} if target else {}
        if isinstance(exc, FileNotFoundError):
            return cls(ErrorCode.E301_FILE_NOT_FOUND, f"File not found: {target}", details)
        if isinstance(exc, PermissionError):
            return cls(ErrorCode.E302_PERMISSION_DENIED, f"Permission denied: {target}", details)
        if exc.errno == errno.ENOSPC:
            return cls(ErrorCode.E303_DISK_FULL, f"No space left on device: {target}", details)
        return cls(ErrorCode.E500_INTERNAL_ERROR, f"I/O error on {target}: {exc}", details)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KBError:
        try:
            code = ErrorCode(data.get("code", ErrorCode.E500_INTERNAL_ERROR.value))
        except ValueError:
            code = ErrorCode.E500_INTERNAL_ERROR
        return cls(code, str(data.get("message", "")), data.get("details") or {})


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful result."""

    value: T
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Err:
    """Failed result wrapping a KBError."""

    error: KBError
    ok: bool = field(default=False, init=False)

    @property
    def code(self) -> ErrorCode:
        return self.error.code

    @property
    def message(self) -> str:
        return self.error.message


Result = Ok[T] | Err


def err(code: ErrorCode, message: str, **details: Any) -> Err:
    return Err(KBError(code, message, details))


@dataclass(frozen=True)
class SoftFailure:
    """Outcome of a best-effort step that did not succeed.

    Returned by steps whose failure must not abort a pipeline. Callers log it
    and move on.
    """

    step: str
    code: ErrorCode
    message: str

    @classmethod
    def from_error(cls, step: str, error: KBError) -> SoftFailure:
        return cls(step=step, code=error.code, message=error.message)

    def __str__(self) -> str:
        return f"{self.step}: [{self.code.value}] {self.message}"
