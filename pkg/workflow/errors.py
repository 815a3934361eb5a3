"""
Error taxonomy for the workflow engine.

Every failure that crosses the facade boundary is a WorkflowError with a
stable ``kind`` and a human-readable message. Controllers map the kind to a
transport status; the engine itself never deals in HTTP codes.
"""
from typing import Dict


class WorkflowError(Exception):
    """Base class for all engine failures."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.message, "kind": self.kind}


class NotFound(WorkflowError):
    """Entity absent, or absent from the caller's accessible set."""
    kind = "not_found"


class Forbidden(WorkflowError):
    """Caller is a project member but lacks the required role."""
    kind = "forbidden"


class InvalidArgument(WorkflowError):
    """Missing or malformed input."""
    kind = "invalid_argument"


class Conflict(WorkflowError):
    """Request is well-formed but violates a structural invariant."""
    kind = "conflict"


class ConfigError(Exception):
    """Raised when configuration is invalid or unreadable."""
    pass
