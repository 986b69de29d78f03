"""
quotagate/features/entitlements/service.py

Entitlement decision function.

Evaluation order (first failing step decides):
  1. kill switches        -> AI_DISABLED, PAID_FEATURES_DISABLED
  2. effective tier       (revoked/expired/past-due collapse to free)
  3. per-user ban         -> AI_BANNED
  4. effective quota <= 0 -> NO_AI_ACCESS
  5. quota ledger         -> QUOTA_EXCEEDED

Store failures raise StoreUnavailableError; a decision is never an implicit
allow. Every decision is handed to the usage log in the background.
"""

import time
from datetime import datetime
from typing import Optional

from quotagate.core.clock import as_utc, date_key as make_date_key, utc_now
from quotagate.core.logging import get_request_id, log_event
from quotagate.core import metrics
from quotagate.features.kill_switches.service import get_kill_switches
from quotagate.features.plans.service import default_plan_record, get_plan_record
from quotagate.features.quota import ledger
from quotagate.features.usage.service import log_usage
from quotagate.models.entitlement import DailyUsage, Decision, DenialReason, UsageSummary
from quotagate.models.kill_switch import KillSwitchSet
from quotagate.models.plan import PlanRecord, PlanSummary, Tier
from quotagate.models.usage_event import UsageLogEntry


def effective_quota(record: PlanRecord, switches: KillSwitchSet, tier: Tier) -> int:
    base = record.quota_override if record.quota_override is not None else switches.ai_quotas.for_tier(tier)
    return base + record.bonus_tokens


def _emit(
    decision: Decision,
    *,
    user_id: str,
    action: str,
    prompt_chars: Optional[int],
    started: float,
    now: datetime,
) -> Decision:
    outcome = "allow" if decision.allow else "deny"
    reason = decision.reason.value if decision.reason else None
    latency_ms = int((time.perf_counter() - started) * 1000)
    metrics.entitlement_decisions_total.inc({"outcome": outcome, "reason": reason or ""})
    log_usage(
        UsageLogEntry(
            user_id=user_id,
            action=action,
            tier_at_time=decision.tier.value,
            outcome=outcome,
            reason=reason,
            remaining=decision.remaining,
            date_key=decision.date_key,
            latency_ms=latency_ms,
            prompt_chars=prompt_chars,
            request_id=get_request_id(),
            created_at=now,
        )
    )
    if not decision.allow:
        log_event(
            "info",
            "entitlement.denied",
            user_id=user_id,
            event_type=action,
            error_code=reason,
            extra={"tier": decision.tier.value, "remaining": decision.remaining},
        )
    return decision


def check_and_consume(
    user_id: str,
    action: str = "ai_request",
    *,
    prompt_chars: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Decision:
    """Decide whether `user_id` may perform one AI request now, consuming a unit on allow."""
    started = time.perf_counter()
    now = as_utc(now) or utc_now()
    day = make_date_key(now)

    def finish(decision: Decision) -> Decision:
        return _emit(decision, user_id=user_id, action=action, prompt_chars=prompt_chars, started=started, now=now)

    switches = get_kill_switches()
    if not switches.ai_enabled:
        return finish(Decision(allow=False, remaining=0, tier=Tier.FREE, date_key=day, reason=DenialReason.AI_DISABLED))
    if not switches.paid_features_enabled:
        return finish(
            Decision(allow=False, remaining=0, tier=Tier.FREE, date_key=day, reason=DenialReason.PAID_FEATURES_DISABLED)
        )

    record = get_plan_record(user_id) or default_plan_record(user_id, now)
    tier = record.effective_tier(now)

    if record.ai_banned:
        return finish(Decision(allow=False, remaining=0, tier=tier, date_key=day, reason=DenialReason.AI_BANNED))

    quota = effective_quota(record, switches, tier)
    if quota <= 0:
        return finish(
            Decision(allow=False, remaining=0, tier=tier, date_key=day, reason=DenialReason.NO_AI_ACCESS, limit=0)
        )

    result = ledger.consume(user_id, day, quota, tier.value, now)
    if not result.allowed:
        return finish(
            Decision(
                allow=False,
                remaining=0,
                tier=tier,
                date_key=day,
                reason=DenialReason.QUOTA_EXCEEDED,
                limit=result.limit,
            )
        )
    return finish(Decision(allow=True, remaining=result.remaining, tier=tier, date_key=day, limit=result.limit))


def get_usage_summary(user_id: str, now: Optional[datetime] = None) -> UsageSummary:
    """Plan and today's usage for display. Never consumes and never authorizes."""
    now = as_utc(now) or utc_now()
    day = make_date_key(now)
    switches = get_kill_switches()
    record = get_plan_record(user_id) or default_plan_record(user_id, now)
    tier = record.effective_tier(now)

    entry = ledger.get_entry(user_id, day)
    if entry is not None:
        count, limit = entry.count, entry.limit
    else:
        count, limit = 0, max(effective_quota(record, switches, tier), 0)
    ai_open = switches.ai_enabled and switches.paid_features_enabled and not record.ai_banned
    remaining = max(limit - count, 0) if ai_open else 0

    return UsageSummary(
        plan=PlanSummary.from_record(record),
        effective_tier=tier,
        ai_enabled=ai_open,
        today=DailyUsage(date_key=day, count=count, limit=limit, remaining=remaining),
    )
