"""
Tests for manual donation review.
"""
from datetime import timedelta

import pytest

from quotagate.core.clock import utc_now
from quotagate.core.errors import ConflictError, NotFoundError, ValidationError
from quotagate.features.audit.service import list_audit_entries
from quotagate.features.donations.service import (
    MAX_NOTE_CHARS,
    approve_donation_request,
    list_donation_requests,
    reject_donation_request,
    submit_donation_request,
)
from quotagate.features.plans.service import get_plan_record, list_plan_history
from quotagate.models.donation import DonationStatus
from quotagate.models.plan import PlanSource, PlanStatus, Tier


def test_submit_creates_pending_request(make_user):
    user_id = make_user("donor")
    created = submit_donation_request(user_id, "supporter", note="  Paid via bank transfer  ")
    assert created.status == DonationStatus.PENDING
    assert created.requested_tier == Tier.SUPPORTER
    assert created.note == "Paid via bank transfer"
    assert list_donation_requests(user_id=user_id) == [created]


@pytest.mark.parametrize("tier", ["free", "gold"])
def test_only_paid_tiers_can_be_requested(make_user, tier):
    user_id = make_user("donor")
    with pytest.raises(ValidationError):
        submit_donation_request(user_id, tier)


def test_note_length_is_capped(make_user):
    user_id = make_user("donor")
    with pytest.raises(ValidationError):
        submit_donation_request(user_id, "pro", note="x" * (MAX_NOTE_CHARS + 1))


def test_one_pending_request_per_user(make_user):
    user_id = make_user("donor")
    submit_donation_request(user_id, "pro")
    with pytest.raises(ConflictError) as excinfo:
        submit_donation_request(user_id, "supporter")
    assert excinfo.value.code == "donation_pending"


def test_approve_grants_plan_with_donation_source(make_user, admin_actor):
    user_id = make_user("donor")
    request = submit_donation_request(user_id, "pro")
    expires = utc_now() + timedelta(days=30)

    approved = approve_donation_request(request.id, actor=admin_actor, expires_at=expires, feedback="Thanks!")

    assert approved.status == DonationStatus.APPROVED
    assert approved.reviewed_by == admin_actor.actor_id
    assert approved.admin_feedback == "Thanks!"

    record = get_plan_record(user_id)
    assert record.tier == Tier.PRO
    assert record.status == PlanStatus.ACTIVE
    assert record.source == PlanSource.DONATION
    assert record.expires_at == expires
    assert list_plan_history(user_id)[0].source == PlanSource.DONATION

    audit = list_audit_entries(action="monetization.plan_set", target_id=user_id)
    assert audit[0].details["donation_request_id"] == request.id


def test_approve_rejects_past_expiry(make_user, admin_actor):
    user_id = make_user("donor")
    request = submit_donation_request(user_id, "pro")
    with pytest.raises(ValidationError):
        approve_donation_request(request.id, actor=admin_actor, expires_at=utc_now() - timedelta(days=1))
    assert get_plan_record(user_id) is None


def test_reject_requires_feedback_and_leaves_plan_alone(make_user, admin_actor):
    user_id = make_user("donor")
    request = submit_donation_request(user_id, "supporter")

    with pytest.raises(ValidationError):
        reject_donation_request(request.id, actor=admin_actor, feedback="  ")

    rejected = reject_donation_request(request.id, actor=admin_actor, feedback="No matching transfer found")
    assert rejected.status == DonationStatus.REJECTED
    assert get_plan_record(user_id) is None
    assert len(list_audit_entries(action="monetization.donation_rejected")) == 1


def test_closed_requests_cannot_be_reviewed_again(make_user, admin_actor):
    user_id = make_user("donor")
    request = submit_donation_request(user_id, "supporter")
    approve_donation_request(request.id, actor=admin_actor)

    with pytest.raises(ConflictError):
        approve_donation_request(request.id, actor=admin_actor)
    with pytest.raises(ConflictError):
        reject_donation_request(request.id, actor=admin_actor, feedback="Too late")
    assert len(list_plan_history(user_id)) == 1


def test_unknown_request_is_not_found(admin_actor):
    with pytest.raises(NotFoundError):
        approve_donation_request(999, actor=admin_actor)


def test_list_filters_by_status(make_user, admin_actor):
    first = make_user("donor_a")
    second = make_user("donor_b")
    pending = submit_donation_request(first, "pro")
    rejected = submit_donation_request(second, "pro")
    reject_donation_request(rejected.id, actor=admin_actor, feedback="Not found")

    assert [r.id for r in list_donation_requests(status="pending")] == [pending.id]
    assert [r.id for r in list_donation_requests(status="rejected")] == [rejected.id]
    with pytest.raises(ValidationError):
        list_donation_requests(status="lost")
