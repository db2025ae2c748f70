from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Engine and registry failures that the API turns into error envelopes.

    Subclasses pin ``status_code`` and ``error_code``; ``detail`` travels to
    the client as ``error.details``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict or state that forbids the operation (409)."""
    status_code = 409
    error_code = "conflict"


class StructuralError(ValidationError):
    """Malformed workflow graph: unknown node reference, cycle, invalid config.

    Raised before a run starts. ``detail["problems"]`` lists every problem
    found so an editor can surface them together.
    """

    def __init__(self, message: str, *, problems: Optional[list] = None) -> None:
        problems = list(problems or [])
        super().__init__(message, detail={"problems": problems})
        self.problems = problems


class NodeExecutionError(ServiceError):
    """A step failed: model error, HTTP non-2xx, script exception or timeout."""
    status_code = 500
    error_code = "server_error"

    def __init__(
        self,
        message: str,
        *,
        node_id: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.node_id = node_id


class ScriptTimeoutError(NodeExecutionError):
    """A node exceeded its time budget."""


class RunAbortedError(ConflictError):
    """A run was cancelled from outside (agent deleted/paused, abort request, run timeout)."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"run aborted: {reason}", detail={"reason": reason})
        self.reason = reason


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "StructuralError",
    "NodeExecutionError",
    "ScriptTimeoutError",
    "RunAbortedError",
]
