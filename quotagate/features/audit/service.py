import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quotagate.core.admin_auth import AdminActor
from quotagate.core.clock import as_utc, utc_now
from quotagate.core.database import audit_log, get_db_session
from quotagate.core.errors import AdminAuditWriteError, StoreUnavailableError
from quotagate.core.logging import _safe_truncate
from quotagate.models.audit import AuditEntry

logger = logging.getLogger(__name__)


def _safe_details(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not details:
        return None
    safe: Dict[str, Any] = {}
    for key, value in details.items():
        if value is None or isinstance(value, (bool, int, float)):
            safe[key] = value
        else:
            safe[key] = _safe_truncate(value)
    return safe


def append_audit_entry(
    session: Session,
    *,
    action: str,
    actor: AdminActor,
    category: str = "monetization",
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Write one audit entry inside the caller's transaction.

    A failed write raises AdminAuditWriteError so the surrounding mutation
    rolls back with it.
    """
    try:
        session.execute(
            insert(audit_log).values(
                action=action,
                category=category,
                actor_id=actor.actor_id,
                actor_name=actor.actor_name,
                actor_role=actor.role,
                target_type=target_type,
                target_id=target_id,
                details=_safe_details(details),
                created_at=utc_now(),
            )
        )
    except SQLAlchemyError as exc:
        logger.error("Audit write failed: %s", exc)
        raise AdminAuditWriteError("Audit write failed; change not applied") from exc


def list_audit_entries(
    *,
    action: Optional[str] = None,
    category: Optional[str] = None,
    target_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[AuditEntry]:
    stmt = select(audit_log)
    if action:
        stmt = stmt.where(audit_log.c.action == action)
    if category:
        stmt = stmt.where(audit_log.c.category == category)
    if target_id:
        stmt = stmt.where(audit_log.c.target_id == target_id)
    stmt = stmt.order_by(audit_log.c.created_at.desc(), audit_log.c.id.desc()).limit(limit).offset(offset)

    try:
        with get_db_session() as session:
            rows = session.execute(stmt).fetchall()
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Audit store unavailable") from exc

    return [
        AuditEntry(
            id=row.id,
            action=row.action,
            category=row.category,
            actor_id=row.actor_id,
            actor_name=row.actor_name,
            actor_role=row.actor_role,
            target_type=row.target_type,
            target_id=row.target_id,
            details=row.details,
            created_at=as_utc(row.created_at),
        )
        for row in rows
    ]
