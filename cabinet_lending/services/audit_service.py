from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cabinet_lending.models.lending_models import AuditLog


AUDIT_LOGGER = logging.getLogger("cabinet_lending.audit")

ACTION_REQUEST_SUBMITTED = "request_submitted"
ACTION_REQUEST_APPROVED = "request_approved"
ACTION_REQUEST_REJECTED = "request_rejected"
ACTION_REQUEST_CANCELLED = "request_cancelled"
ACTION_TOKEN_REGENERATED = "token_regenerated"
ACTION_TOKEN_EXTENDED = "extend_token"
ACTION_PICKUP_UNDONE = "pickup_undone"
ACTION_REQUEST_EXPIRED = "request_expired"
ACTION_RETURN_REPORTED = "return_reported"
ACTION_RETURN_CONFIRMED = "return_processed"


def _to_json(details: dict[str, Any] | None) -> str | None:
    if not details:
        return None
    return json.dumps(details, ensure_ascii=True, default=str)[:2000]


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    details: dict[str, Any] | None = None,
    actor_name: str | None = None,
    station_id: int | None = None,
) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            StationID=station_id,
            Action=action,
            Details=_to_json(details),
            ActorName=actor_name,
            CreatedAt=datetime.now(),
        )
    )


def record_audit(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    details: dict[str, Any] | None = None,
    actor_name: str | None = None,
    station_id: int | None = None,
) -> bool:
    """Append an audit entry in its own commit. Failures are logged, never raised."""
    try:
        log_audit(db, entity_type, entity_id, action, details, actor_name=actor_name, station_id=station_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        AUDIT_LOGGER.exception("Audit write failed entity=%s id=%s action=%s", entity_type, entity_id, action)
        return False
    return True
