from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from app.models.audit_log import AuditLog
from app.schemas.caller import Caller


def _jsonable(value: Any) -> Any:
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def snapshot_model(obj: Any | None) -> dict | None:
    if obj is None:
        return None
    data: dict[str, Any] = {}
    mapper = inspect(obj).mapper
    for column in mapper.columns:
        data[column.key] = _jsonable(getattr(obj, column.key))
    return data


def log_event(
    db: Session,
    *,
    actor: Caller | None,
    action: str,
    entity_type: str,
    entity_id: str,
    before_obj: Any | None = None,
    after_obj: Any | None = None,
    before_data: dict | None = None,
    after_data: dict | None = None,
) -> AuditLog:
    entry = AuditLog(
        actor_code=actor.identity if actor else None,
        actor_role=actor.role.value if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        before_json=(
            {k: _jsonable(v) for k, v in before_data.items()}
            if before_data is not None
            else snapshot_model(before_obj)
        ),
        after_json=(
            {k: _jsonable(v) for k, v in after_data.items()}
            if after_data is not None
            else snapshot_model(after_obj)
        ),
    )
    db.add(entry)
    return entry
