"""
quotagate/features/kill_switches/service.py

Global kill switch registry.

Read fresh on every decision; there is no process cache, so a flipped switch
applies to the very next request. Writes replace the whole set, bump the
version and are audited in the same transaction.
"""

from typing import Any, Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, insert, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quotagate.core.admin_auth import AdminActor
from quotagate.core.clock import as_utc, utc_now
from quotagate.core.database import get_db_session, kill_switches
from quotagate.core.errors import StoreUnavailableError, ValidationError
from quotagate.core.logging import log_event
from quotagate.features.audit.service import append_audit_entry
from quotagate.models.kill_switch import AIQuotas, KillSwitchSet

GLOBAL_ID = "global"


def _row_to_set(row) -> KillSwitchSet:
    return KillSwitchSet(
        ai_enabled=row.ai_enabled,
        paid_features_enabled=row.paid_features_enabled,
        monetization_visible=row.monetization_visible,
        ai_quotas=AIQuotas(free=row.quota_free, supporter=row.quota_supporter, pro=row.quota_pro),
        version=row.version,
        updated_at=as_utc(row.updated_at),
        updated_by=row.updated_by,
    )


def _load(session: Session) -> Optional[KillSwitchSet]:
    row = session.execute(select(kill_switches).where(kill_switches.c.id == GLOBAL_ID)).first()
    return _row_to_set(row) if row else None


def get_kill_switches(session: Optional[Session] = None) -> KillSwitchSet:
    """Current set, or the defaults when it was never written."""
    try:
        if session is not None:
            current = _load(session)
        else:
            with get_db_session() as s:
                current = _load(s)
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Kill switch store unavailable") from exc
    return current or KillSwitchSet()


def _coerce(new_set: Union[KillSwitchSet, Dict[str, Any]]) -> KillSwitchSet:
    if isinstance(new_set, KillSwitchSet):
        return new_set
    try:
        return KillSwitchSet(**new_set)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(f"{field}: {first.get('msg')}") from exc


def update_kill_switches(new_set: Union[KillSwitchSet, Dict[str, Any]], actor: AdminActor) -> KillSwitchSet:
    """Full-document replace of the toggle set."""
    desired = _coerce(new_set)
    now = utc_now()
    values = {
        "ai_enabled": desired.ai_enabled,
        "paid_features_enabled": desired.paid_features_enabled,
        "monetization_visible": desired.monetization_visible,
        "quota_free": desired.ai_quotas.free,
        "quota_supporter": desired.ai_quotas.supporter,
        "quota_pro": desired.ai_quotas.pro,
        "updated_at": now,
        "updated_by": actor.actor_id,
    }

    try:
        with get_db_session() as session:
            previous = _load(session)
            if previous is None:
                version = 1
                session.execute(insert(kill_switches).values(id=GLOBAL_ID, version=version, **values))
            else:
                version = previous.version + 1
                session.execute(
                    update(kill_switches).where(kill_switches.c.id == GLOBAL_ID).values(version=version, **values)
                )
            append_audit_entry(
                session,
                action="settings.kill_switches_updated",
                category="settings",
                actor=actor,
                target_type="settings",
                target_id=GLOBAL_ID,
                details={
                    "version": version,
                    "ai_enabled": desired.ai_enabled,
                    "paid_features_enabled": desired.paid_features_enabled,
                    "monetization_visible": desired.monetization_visible,
                    "quota_free": desired.ai_quotas.free,
                    "quota_supporter": desired.ai_quotas.supporter,
                    "quota_pro": desired.ai_quotas.pro,
                },
            )
            updated = _load(session)
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Kill switch store unavailable") from exc

    log_event(
        "info",
        "kill_switches.updated",
        user_id=actor.actor_id,
        target_id=GLOBAL_ID,
        event_type="settings.kill_switches_updated",
        extra={"version": version, "ai_enabled": desired.ai_enabled},
    )
    return updated
