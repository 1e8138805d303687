"""
Error taxonomy for Memory Mesh.

Components raise these internally and turn them into structured results
at their public boundary; callers branch on ``result["success"]``
instead of catching exceptions.
"""

from typing import Any, Dict, List, Optional


class MemoryMeshError(Exception):
    """Base error."""

    code = "error"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class NotFoundError(MemoryMeshError):
    """An import file does not exist."""

    code = "not_found"


class ParseError(MemoryMeshError):
    """Malformed JSON on load or import."""

    code = "parse_error"


class ExportValidationError(MemoryMeshError):
    """A team export document has the wrong shape."""

    code = "validation_error"


class UnknownReferenceError(MemoryMeshError):
    """Feedback against a suggestion id nobody recorded."""

    code = "unknown_reference"


def error_result(exc: MemoryMeshError) -> Dict[str, Any]:
    """Convert an error into the ``{success: False, ...}`` result shape."""
    result: Dict[str, Any] = {
        "success": False,
        "error": exc.message,
        "error_type": exc.code,
    }
    if exc.errors:
        result["errors"] = list(exc.errors)
    return result


def clamp(value: Any, low: float = 0.0, high: float = 1.0, default: float = 0.5) -> float:
    """Coerce to float within [low, high]; non-numeric input becomes ``default``."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(low, min(high, number))
