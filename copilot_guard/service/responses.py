"""
Response envelope for copilot operations.

Success bodies carry an explicit `ok` flag and the payload. Error bodies carry
a short stable code. Internal failures expose only a correlation id; the
diagnostic detail goes to the server log under the same id.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from copilot_guard.core.clock import to_iso
from copilot_guard.storage.models import CopilotSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResponse:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return bool(self.body.get("ok"))

    @property
    def error(self) -> Optional[str]:
        return self.body.get("error")


def copilot_ok(payload: Dict[str, Any], status: int = 200) -> ServiceResponse:
    return ServiceResponse(status, {"ok": True, "data": payload, **payload})


def json_error(status: int, code: str, extra: Any = None) -> ServiceResponse:
    body: Dict[str, Any] = {"ok": False, "error": code}
    if extra:
        body["extra"] = extra
    return ServiceResponse(status, body)


def rate_limited(retry_after_ms: int = 0) -> ServiceResponse:
    return ServiceResponse(
        429,
        {"ok": False, "error": "rate_limited", "retry_after_ms": retry_after_ms},
    )


def internal_error(operation: str) -> ServiceResponse:
    """Log the exception being handled and return an opaque 500.

    Must be called from inside an `except` block.
    """
    correlation_id = str(uuid.uuid4())
    logger.exception("Copilot %s failed [correlation_id=%s]", operation, correlation_id)
    return ServiceResponse(
        500,
        {"ok": False, "error": "internal_error", "correlation_id": correlation_id},
    )


def session_expired_response(
    session: CopilotSession,
    now: datetime,
    reason: str = "heartbeat_timeout",
) -> ServiceResponse:
    stopped_at = session.stopped_at or now
    return ServiceResponse(
        409,
        {
            "ok": False,
            "error": "session_expired",
            "code": "session_expired",
            "state": "expired",
            "message": "Session expired due to inactivity. Start a new session to continue.",
            "expired_reason": reason,
            "session": {
                "id": session.id,
                "status": "expired",
                "stopped_at": to_iso(stopped_at),
            },
        },
    )
