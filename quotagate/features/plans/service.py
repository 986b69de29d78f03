"""
quotagate/features/plans/service.py

Plan store mutations and reads.

Handles:
- set_plan / revoke_plan: one transaction writes the plan record, the
  profile summary, one history entry and one audit entry
- set_ai_overrides: merge-update of per-user AI overrides (audited, no history)
- get_plan_record / list_plan_history

All four writes of a transition commit together; a failed audit write rolls
back the whole transition.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import select, insert, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quotagate.core.admin_auth import AdminActor
from quotagate.core.clock import as_utc, utc_now
from quotagate.core.database import get_db_session, user_plans, plan_history
from quotagate.core.errors import StoreUnavailableError, ValidationError
from quotagate.core.logging import log_event
from quotagate.core import metrics
from quotagate.features.audit.service import append_audit_entry
from quotagate.features.users.service import require_existing_user, sync_plan_summary
from quotagate.models.plan import (
    PlanHistoryEntry,
    PlanRecord,
    PlanSource,
    PlanStatus,
    PlanSummary,
    Tier,
)


DEFAULT_REVOKE_REASON = "Revoked by admin"


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def _parse_enum(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {field}: {value!r} (expected one of {allowed})", code=f"invalid_{field}")


def _row_to_record(row) -> PlanRecord:
    return PlanRecord(
        user_id=row.user_id,
        tier=row.tier,
        status=row.status,
        source=row.source,
        expires_at=as_utc(row.expires_at),
        started_at=as_utc(row.started_at),
        updated_at=as_utc(row.updated_at),
        updated_by=row.updated_by,
        reason=row.reason or "",
        ai_banned=bool(row.ai_banned),
        bonus_tokens=row.bonus_tokens or 0,
        quota_override=row.quota_override,
    )


def load_plan_record(session: Session, user_id: str) -> Optional[PlanRecord]:
    row = session.execute(select(user_plans).where(user_plans.c.user_id == user_id)).first()
    return _row_to_record(row) if row else None


def get_plan_record(user_id: str, session: Optional[Session] = None) -> Optional[PlanRecord]:
    try:
        if session is not None:
            return load_plan_record(session, user_id)
        with get_db_session() as s:
            return load_plan_record(s, user_id)
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Plan store unavailable") from exc


def default_plan_record(user_id: str, now: datetime, updated_by: str = "system") -> PlanRecord:
    """The implicit plan of a user who was never granted anything."""
    return PlanRecord(user_id=user_id, started_at=now, updated_at=now, updated_by=updated_by)


def list_plan_history(user_id: str, limit: int = 100) -> List[PlanHistoryEntry]:
    stmt = (
        select(plan_history)
        .where(plan_history.c.user_id == user_id)
        .order_by(plan_history.c.created_at.desc(), plan_history.c.id.desc())
        .limit(limit)
    )
    try:
        with get_db_session() as session:
            rows = session.execute(stmt).fetchall()
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Plan store unavailable") from exc
    return [
        PlanHistoryEntry(
            id=row.id,
            user_id=row.user_id,
            old_tier=row.old_tier,
            new_tier=row.new_tier,
            old_status=row.old_status,
            new_status=row.new_status,
            actor_id=row.actor_id,
            actor_name=row.actor_name,
            source=row.source,
            reason=row.reason or "",
            expires_at=as_utc(row.expires_at),
            created_at=as_utc(row.created_at),
        )
        for row in rows
    ]


def _write_record(session: Session, record: PlanRecord, exists: bool) -> None:
    values = {
        "tier": record.tier.value,
        "status": record.status.value,
        "source": record.source.value,
        "expires_at": record.expires_at,
        "started_at": record.started_at,
        "updated_at": record.updated_at,
        "updated_by": record.updated_by,
        "reason": record.reason,
        "ai_banned": record.ai_banned,
        "bonus_tokens": record.bonus_tokens,
        "quota_override": record.quota_override,
    }
    if exists:
        session.execute(update(user_plans).where(user_plans.c.user_id == record.user_id).values(**values))
    else:
        session.execute(insert(user_plans).values(user_id=record.user_id, **values))


def apply_plan_transition(
    session: Session,
    *,
    user_id: str,
    tier: Tier,
    status: PlanStatus,
    source: PlanSource,
    expires_at: Optional[datetime],
    reason: str,
    actor: AdminActor,
    audit_action: str,
    now: datetime,
    audit_details: Optional[Dict[str, Any]] = None,
) -> PlanRecord:
    """Plan record + profile summary + history + audit, inside `session`.

    Overrides (ban, bonus, quota override) carry over unchanged. `started_at`
    is kept only when the previous record is the same tier and still active.
    """
    previous = load_plan_record(session, user_id)
    base = previous or default_plan_record(user_id, now)

    keep_start = previous is not None and previous.tier == tier and previous.effective_tier(now) == tier
    record = base.model_copy(
        update={
            "tier": tier,
            "status": status,
            "source": source,
            "expires_at": expires_at,
            "started_at": base.started_at if keep_start else now,
            "updated_at": now,
            "updated_by": actor.actor_id,
            "reason": reason,
        }
    )

    _write_record(session, record, exists=previous is not None)
    sync_plan_summary(session, record, now)
    session.execute(
        insert(plan_history).values(
            user_id=user_id,
            old_tier=base.tier.value,
            new_tier=tier.value,
            old_status=base.status.value,
            new_status=status.value,
            actor_id=actor.actor_id,
            actor_name=actor.actor_name,
            source=source.value,
            reason=reason,
            expires_at=expires_at,
            created_at=now,
        )
    )
    details = {
        "old_tier": base.tier.value,
        "new_tier": tier.value,
        "old_status": base.status.value,
        "new_status": status.value,
        "source": source.value,
        "expires_at": expires_at.isoformat() if expires_at else None,
        "reason": reason,
    }
    details.update(audit_details or {})
    append_audit_entry(
        session,
        action=audit_action,
        actor=actor,
        target_type="user",
        target_id=user_id,
        details=details,
    )
    return record


def set_plan(
    target_user_id: str,
    tier: Union[Tier, str],
    *,
    actor: AdminActor,
    status: Union[PlanStatus, str] = PlanStatus.ACTIVE,
    expires_at: Optional[datetime] = None,
    reason: str = "",
    source: Union[PlanSource, str] = PlanSource.ADMIN_GRANT,
    now: Optional[datetime] = None,
    _audit_action: str = "monetization.plan_set",
) -> PlanSummary:
    """Grant or change a user's plan. Validation happens before any write."""
    tier = _parse_enum(Tier, tier, "tier")
    status = _parse_enum(PlanStatus, status, "status")
    source = _parse_enum(PlanSource, source, "source")
    now = as_utc(now) or utc_now()
    expires_at = as_utc(expires_at)
    reason = (reason or "").strip()

    try:
        with get_db_session() as session:
            require_existing_user(session, target_user_id)
            record = apply_plan_transition(
                session,
                user_id=target_user_id,
                tier=tier,
                status=status,
                source=source,
                expires_at=expires_at,
                reason=reason,
                actor=actor,
                audit_action=_audit_action,
                now=now,
            )
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Plan store unavailable") from exc

    metrics.plan_mutations_total.inc({"action": _audit_action})
    log_event(
        "info",
        "plan.transition",
        user_id=actor.actor_id,
        target_id=target_user_id,
        event_type=_audit_action,
        extra={"tier": tier.value, "status": status.value, "source": source.value},
    )
    return PlanSummary.from_record(record)


def revoke_plan(
    target_user_id: str,
    *,
    actor: AdminActor,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PlanSummary:
    """Back to free/revoked. The record itself is never deleted."""
    return set_plan(
        target_user_id,
        Tier.FREE,
        actor=actor,
        status=PlanStatus.REVOKED,
        expires_at=None,
        reason=(reason or "").strip() or DEFAULT_REVOKE_REASON,
        now=now,
        _audit_action="monetization.plan_revoked",
    )


def set_ai_overrides(
    target_user_id: str,
    *,
    actor: AdminActor,
    bonus_tokens: Any = UNSET,
    ai_banned: Any = UNSET,
    quota_override: Any = UNSET,
    now: Optional[datetime] = None,
) -> PlanSummary:
    """Merge-update only the supplied override fields.

    `quota_override=None` clears the override; leaving it UNSET keeps it.
    A user without a plan record gets a default free/active one.
    """
    changes: Dict[str, Any] = {}
    if bonus_tokens is not UNSET:
        if isinstance(bonus_tokens, bool) or not isinstance(bonus_tokens, int) or bonus_tokens < 0:
            raise ValidationError("bonus_tokens must be a non-negative integer", code="invalid_override")
        changes["bonus_tokens"] = bonus_tokens
    if ai_banned is not UNSET:
        if not isinstance(ai_banned, bool):
            raise ValidationError("ai_banned must be a boolean", code="invalid_override")
        changes["ai_banned"] = ai_banned
    if quota_override is not UNSET:
        if quota_override is not None and (
            isinstance(quota_override, bool) or not isinstance(quota_override, int) or quota_override < 0
        ):
            raise ValidationError("quota_override must be a non-negative integer or null", code="invalid_override")
        changes["quota_override"] = quota_override
    if not changes:
        raise ValidationError("No override fields supplied", code="invalid_override")

    now = as_utc(now) or utc_now()
    try:
        with get_db_session() as session:
            require_existing_user(session, target_user_id)
            previous = load_plan_record(session, target_user_id)
            base = previous or default_plan_record(target_user_id, now, actor.actor_id)
            record = base.model_copy(update={**changes, "updated_at": now, "updated_by": actor.actor_id})
            _write_record(session, record, exists=previous is not None)
            if previous is None:
                sync_plan_summary(session, record, now)
            append_audit_entry(
                session,
                action="monetization.ai_overrides_set",
                actor=actor,
                target_type="user",
                target_id=target_user_id,
                details=dict(changes),
            )
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Plan store unavailable") from exc

    metrics.plan_mutations_total.inc({"action": "monetization.ai_overrides_set"})
    log_event(
        "info",
        "plan.overrides",
        user_id=actor.actor_id,
        target_id=target_user_id,
        event_type="monetization.ai_overrides_set",
        extra={"fields": ",".join(sorted(changes))},
    )
    return PlanSummary.from_record(record)
