"""Error types shared across the service.

Two families live here:

* ``ApiError`` - a client-facing failure with a stable code, rendered as
  ``{"success": false, "error": {...}}`` by the API layer.
* ``ConfigurationError`` - a missing process-wide secret or credential. It is
  fatal for the whole operation and never retried automatically.
"""

from __future__ import annotations

from typing import Any, Optional


class ConfigurationError(RuntimeError):
    """A required secret or credential is not configured."""

    def __init__(self, code: str, message: str, missing: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.missing = missing or []


class ApiError(Exception):
    """An error reported to the caller with a stable code."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}

    @classmethod
    def from_configuration(cls, exc: ConfigurationError) -> "ApiError":
        details = {"missingKeys": exc.missing} if exc.missing else None
        return cls(exc.code, exc.message, status_code=500, details=details)


def invalid_parameters(
    missing: Optional[list[str]] = None,
    invalid: Optional[list[str]] = None,
) -> ApiError:
    """Build the generic INVALID_PARAMETERS error."""
    details: dict[str, Any] = {}
    if missing:
        details["missingFields"] = missing
    if invalid:
        details["invalidFields"] = invalid
    return ApiError(
        "INVALID_PARAMETERS",
        "Missing or malformed required parameters",
        details=details or None,
    )
