from __future__ import annotations

import json
import logging
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Literal, Optional

from .request_id import get_request_id

AuditAction = Literal[
    "reservation.requested",
    "reservation.approved",
    "reservation.rejected",
    "reservation.cancelled",
    "reservation.completed",
    "reservation.rescheduled",
]
AuditInitiator = Literal["customer", "admin", "system"]


def _build_logger() -> logging.Logger:
    logger = logging.getLogger("audit")
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    # One JSON object per line; keep it out of the application log stream
    logger.propagate = False
    return logger


_audit_logger = _build_logger()


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, time):
        return value.strftime("%H:%M")
    if isinstance(value, date):
        return value.isoformat()
    return value


def emit_audit_log(
    *,
    action: AuditAction,
    initiator: AuditInitiator,
    reservation_id: str,
    user_id: Optional[int],
    actor_id: Optional[int] = None,
    resource_type: Any = None,
    date: Optional[date] = None,
    time: Optional[time] = None,
    status_from: Any = None,
    status_to: Any = None,
    version: Optional[int] = None,
    message: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """Write one audit line for a reservation event.

    Only identifiers, the slot and the status change are recorded; contact
    details stay out of the audit trail. Raises RuntimeError if the line
    cannot be written so the caller can fail the request.
    """
    record: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": "info",
        "action": action,
        "initiator": initiator,
        "request_id": get_request_id(),
        "reservation_id": reservation_id,
        "user_id": user_id,
        "actor_id": actor_id,
        "resource_type": resource_type,
        "date": date,
        "time": time,
        "status_from": status_from,
        "status_to": status_to,
        "version": version,
        "message": message,
    }
    record.update(extra or {})
    line = {key: _plain(value) for key, value in record.items() if value is not None}
    try:
        _audit_logger.info(json.dumps(line, ensure_ascii=True, default=str))
    except Exception as exc:
        raise RuntimeError("failed to emit audit log") from exc
