"""
Request-level copilot operations.

Wraps the core engine in request units with rate limiting, validation and a
uniform response envelope.
"""

from .copilot import CopilotService
from .responses import ServiceResponse

__all__ = ["CopilotService", "ServiceResponse"]
