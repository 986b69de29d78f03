"""
quotagate/features/users/service.py

User profiles: existence checks, role lookup for the admin fallback, and the
denormalized plan summary kept on the profile for UI consumers.
"""

from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from quotagate.core.clock import utc_now
from quotagate.core.database import get_db_session, users
from quotagate.core.errors import StoreUnavailableError, ValidationError
from quotagate.models.plan import PlanRecord


def _row_to_dict(row) -> Dict[str, Any]:
    return dict(row._mapping)


def get_user(user_id: str, session: Optional[Session] = None) -> Optional[Dict[str, Any]]:
    stmt = select(users).where(users.c.user_id == user_id)
    try:
        if session is not None:
            row = session.execute(stmt).first()
        else:
            with get_db_session() as s:
                row = s.execute(stmt).first()
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("User store unavailable") from exc
    return _row_to_dict(row) if row else None


def get_user_role(user_id: str) -> Optional[str]:
    profile = get_user(user_id)
    return profile["role"] if profile else None


def ensure_user(
    user_id: str,
    *,
    display_name: Optional[str] = None,
    role: str = "user",
) -> Dict[str, Any]:
    """Create the profile on first contact (idempotent). Existing profiles are returned untouched."""
    existing = get_user(user_id)
    if existing:
        return existing
    now = utc_now()
    try:
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    display_name=display_name,
                    role=role,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # Concurrent first contact; the other insert won
        pass
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("User store unavailable") from exc
    return get_user(user_id)


def set_user_role(user_id: str, role: str) -> None:
    if role not in ("user", "moderator", "admin"):
        raise ValidationError(f"Invalid role: {role}")
    with get_db_session() as session:
        result = session.execute(
            update(users).where(users.c.user_id == user_id).values(role=role, updated_at=utc_now())
        )
        if not result.rowcount:
            raise ValidationError(f"Unknown user: {user_id}")


def require_existing_user(session: Session, user_id: str) -> Dict[str, Any]:
    """Validation error for a blank or unknown target user."""
    if not user_id or not user_id.strip():
        raise ValidationError("Target user id is required", code="invalid_target")
    profile = get_user(user_id, session=session)
    if profile is None:
        raise ValidationError(f"Unknown user: {user_id}", code="invalid_target")
    return profile


def sync_plan_summary(session: Session, record: PlanRecord, now: Optional[datetime] = None) -> None:
    """Mirror the plan record onto the profile (same transaction as the plan write)."""
    session.execute(
        update(users)
        .where(users.c.user_id == record.user_id)
        .values(
            plan=record.tier.value,
            plan_status=record.status.value,
            plan_source=record.source.value,
            plan_expires_at=record.expires_at,
            plan_updated_at=now or record.updated_at,
            updated_at=now or record.updated_at,
        )
    )
