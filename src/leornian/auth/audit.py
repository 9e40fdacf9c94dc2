"""
Audit trail for security-relevant account events.

Events go through structlog under the ``leornian.audit`` logger with
``event="audit"`` so log shippers can route them apart from request logs.
Successful actions log at info, refused ones at warning.
"""

from __future__ import annotations

from typing import Any

import structlog

logger = structlog.get_logger("leornian.audit")


def audit_event(action: str, *, user_id: str | None, success: bool = True, **fields: Any) -> None:
    """Record one account event (login, logout, password_changed, role_changed, ...)."""
    log = logger.info if success else logger.warning
    log("audit", action=action, user_id=user_id, success=success, **fields)
