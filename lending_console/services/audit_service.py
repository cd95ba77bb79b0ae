from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.base import Base
from db.session import engine_audit
from models.audit_models import ConsoleAuditLog


AUDIT_LOGGER = logging.getLogger("lending_console.audit")


def init_audit_schema() -> None:
    Base.metadata.create_all(bind=engine_audit)


def log_audit(
    db: Session,
    action: str,
    *,
    entity_type: str = "Auth",
    entity_id: int | None = None,
    details: str | None = None,
    user_email: str | None = None,
) -> None:
    try:
        db.add(
            ConsoleAuditLog(
                Action=action,
                EntityType=entity_type,
                EntityID=entity_id,
                Details=details,
                UserEmail=user_email,
                CreatedAt=datetime.now(),
            )
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        AUDIT_LOGGER.warning("Audit write failed action=%s entity=%s error=%s", action, entity_type, exc)


def recent_events(db: Session, limit: int = 50) -> list[dict]:
    rows = db.execute(
        select(ConsoleAuditLog).order_by(ConsoleAuditLog.AuditID.desc()).limit(limit)
    ).scalars().all()
    return [
        {
            "id": row.AuditID,
            "action": row.Action,
            "entityType": row.EntityType,
            "entityId": row.EntityID,
            "details": row.Details,
            "userEmail": row.UserEmail,
            "createdAt": row.CreatedAt,
        }
        for row in rows
    ]
