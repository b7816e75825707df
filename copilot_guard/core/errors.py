"""
Error taxonomy for the copilot engine.

Domain failures carry a short, stable error code that is safe to hand to a
caller. Diagnostic detail stays in the server log.
"""

from typing import Optional


class CopilotError(Exception):
    """Base exception for all copilot engine errors."""

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code


class RetentionSweepError(CopilotError):
    """Raised when any deletion of a retention sweep fails.

    The sweep is aborted as a whole; partial results are never reported.
    """

    def __init__(self, entity: str, detail: str):
        super().__init__(
            "copilot_retention_sweep_failed",
            f"Retention sweep failed while deleting {entity}: {detail}"
        )
        self.entity = entity
        self.detail = detail


class UnscopedDeleteError(CopilotError):
    """Raised when a bulk delete is attempted without an owner, status or age filter."""

    def __init__(self, entity: str):
        super().__init__(
            "unscoped_delete",
            f"Refusing to bulk delete {entity} without a scoping filter"
        )
        self.entity = entity
