"""
quotagate/features/donations/service.py

Donation requests reviewed by hand. No payment is captured here: a user
claims a donation, an admin checks it elsewhere and approves (granting the
requested tier with source=donation) or rejects with feedback.
"""

from datetime import datetime
from typing import List, Optional, Union

from sqlalchemy import select, insert, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quotagate.core.admin_auth import AdminActor
from quotagate.core.clock import as_utc, utc_now
from quotagate.core.database import donation_requests, get_db_session
from quotagate.core.errors import ConflictError, NotFoundError, StoreUnavailableError, ValidationError
from quotagate.core.logging import log_event
from quotagate.features.audit.service import append_audit_entry
from quotagate.features.plans.service import apply_plan_transition
from quotagate.features.users.service import require_existing_user
from quotagate.models.donation import DonationRequest, DonationStatus
from quotagate.models.plan import PlanSource, PlanStatus, Tier

MAX_NOTE_CHARS = 1000


def _row_to_request(row) -> DonationRequest:
    return DonationRequest(
        id=row.id,
        user_id=row.user_id,
        requested_tier=row.requested_tier,
        status=row.status,
        note=row.note or "",
        admin_feedback=row.admin_feedback,
        reviewed_by=row.reviewed_by,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _load(session: Session, request_id: int) -> DonationRequest:
    row = session.execute(select(donation_requests).where(donation_requests.c.id == request_id)).first()
    if row is None:
        raise NotFoundError(f"Donation request {request_id} not found")
    return _row_to_request(row)


def submit_donation_request(user_id: str, requested_tier: Union[Tier, str], note: str = "") -> DonationRequest:
    try:
        tier = Tier(requested_tier)
    except ValueError:
        raise ValidationError("requested_tier must be supporter or pro", code="invalid_tier")
    if tier == Tier.FREE:
        raise ValidationError("requested_tier must be supporter or pro", code="invalid_tier")
    note = (note or "").strip()
    if len(note) > MAX_NOTE_CHARS:
        raise ValidationError(f"note must be at most {MAX_NOTE_CHARS} characters")

    now = utc_now()
    try:
        with get_db_session() as session:
            require_existing_user(session, user_id)
            pending = session.execute(
                select(donation_requests.c.id)
                .where(donation_requests.c.user_id == user_id)
                .where(donation_requests.c.status == DonationStatus.PENDING.value)
            ).first()
            if pending:
                raise ConflictError("A donation request is already pending", code="donation_pending")
            result = session.execute(
                insert(donation_requests).values(
                    user_id=user_id,
                    requested_tier=tier.value,
                    status=DonationStatus.PENDING.value,
                    note=note,
                    created_at=now,
                    updated_at=now,
                )
            )
            created = _load(session, result.inserted_primary_key[0])
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Donation store unavailable") from exc

    log_event("info", "donation.submitted", user_id=user_id, event_type="donation.submitted", extra={"tier": tier.value})
    return created


def list_donation_requests(
    *,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 100,
) -> List[DonationRequest]:
    stmt = select(donation_requests)
    if status:
        try:
            stmt = stmt.where(donation_requests.c.status == DonationStatus(status).value)
        except ValueError:
            raise ValidationError(f"Invalid status: {status}", code="invalid_status")
    if user_id:
        stmt = stmt.where(donation_requests.c.user_id == user_id)
    stmt = stmt.order_by(donation_requests.c.created_at.desc(), donation_requests.c.id.desc()).limit(limit)
    try:
        with get_db_session() as session:
            return [_row_to_request(row) for row in session.execute(stmt).fetchall()]
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Donation store unavailable") from exc


def _close_request(session: Session, request_id: int, status: DonationStatus, actor: AdminActor, feedback, now) -> None:
    result = session.execute(
        update(donation_requests)
        .where(donation_requests.c.id == request_id)
        .where(donation_requests.c.status == DonationStatus.PENDING.value)
        .values(status=status.value, admin_feedback=feedback, reviewed_by=actor.actor_id, updated_at=now)
    )
    if result.rowcount != 1:
        raise ConflictError("Donation request is no longer pending", code="donation_not_pending")


def approve_donation_request(
    request_id: int,
    *,
    actor: AdminActor,
    expires_at: Optional[datetime] = None,
    reason: Optional[str] = None,
    feedback: Optional[str] = None,
) -> DonationRequest:
    """Approve and grant the requested tier in one transaction."""
    now = utc_now()
    expires_at = as_utc(expires_at)
    if expires_at is not None and expires_at <= now:
        raise ValidationError("expires_at must be in the future", code="invalid_expiry")

    try:
        with get_db_session() as session:
            request = _load(session, request_id)
            if request.status != DonationStatus.PENDING:
                raise ConflictError("Donation request is no longer pending", code="donation_not_pending")
            require_existing_user(session, request.user_id)
            _close_request(session, request_id, DonationStatus.APPROVED, actor, feedback, now)
            apply_plan_transition(
                session,
                user_id=request.user_id,
                tier=request.requested_tier,
                status=PlanStatus.ACTIVE,
                source=PlanSource.DONATION,
                expires_at=expires_at,
                reason=(reason or "").strip() or f"Donation request #{request_id} approved",
                actor=actor,
                audit_action="monetization.plan_set",
                now=now,
                audit_details={"donation_request_id": request_id},
            )
            updated = _load(session, request_id)
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Donation store unavailable") from exc

    log_event(
        "info",
        "donation.approved",
        user_id=actor.actor_id,
        target_id=request.user_id,
        event_type="donation.approved",
        extra={"tier": request.requested_tier.value, "request": request_id},
    )
    return updated


def reject_donation_request(request_id: int, *, actor: AdminActor, feedback: str) -> DonationRequest:
    feedback = (feedback or "").strip()
    if not feedback:
        raise ValidationError("feedback is required when rejecting", code="feedback_required")
    now = utc_now()
    try:
        with get_db_session() as session:
            request = _load(session, request_id)
            if request.status != DonationStatus.PENDING:
                raise ConflictError("Donation request is no longer pending", code="donation_not_pending")
            _close_request(session, request_id, DonationStatus.REJECTED, actor, feedback, now)
            append_audit_entry(
                session,
                action="monetization.donation_rejected",
                actor=actor,
                target_type="donation_request",
                target_id=str(request_id),
                details={"user_id": request.user_id, "requested_tier": request.requested_tier.value, "feedback": feedback},
            )
            updated = _load(session, request_id)
    except SQLAlchemyError as exc:
        raise StoreUnavailableError("Donation store unavailable") from exc

    log_event("info", "donation.rejected", user_id=actor.actor_id, target_id=request.user_id, event_type="donation.rejected")
    return updated
