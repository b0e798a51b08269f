"""Error types for bottles."""
from typing import Any, Dict, Optional

import structlog

from pkg_bottles.logging import get_logger


def log_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    logger: Optional[structlog.stdlib.BoundLogger] = None
) -> None:
    """Log an error with context."""
    logger = logger or get_logger(__name__)

    error_info: Dict[str, Any] = {
        "event": "bottle_error",
        "error_type": error.__class__.__name__,
        "error_message": str(error)
    }
    if context:
        error_info["context"] = context
    if isinstance(error, BottleError):
        error_info["code"] = error.code
        error_info["suggestion"] = error.suggestion
        error_info["details"] = error.details

    logger.error(error_info)


class BottleError(Exception):
    """Base error class for bottles."""
    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.code = code
        self.suggestion = suggestion
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": str(self),
            "suggestion": self.suggestion,
            "details": self.details,
        }


class ShellError(BottleError):
    """Persistent shell failure (spawn, init, dead or busy process)."""


class VolumeError(BottleError):
    """Cache volume operation error."""
    def __init__(
        self,
        message: str,
        code: str,
        manager: Optional[str] = None,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message,
            code=code,
            suggestion=suggestion,
            details={**(details or {}), "manager": manager}
        )
        self.manager = manager


class PackageManagerError(BottleError):
    """Package manager adapter error."""
