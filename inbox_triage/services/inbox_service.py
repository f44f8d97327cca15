from datetime import datetime, timezone
from typing import Optional

from inbox_triage.config import Settings, settings as default_settings
from inbox_triage.schemas.inbox import InboxStateRequest, ThresholdsIn
from inbox_triage.services.conversation_audit import days_since
from inbox_triage.services.state_machine import (
    Confidence,
    ConversationState,
    DeferralSchedule,
    ExplicitLostCandidate,
    FollowupDueSource,
    HardSignals,
    InboxStateMachineContext,
    MessageCounts,
    MessageDirection,
    Thresholds,
    Timing,
)

DAY_THRESHOLDS = (
    "inactive_timeout_days",
    "lost_after_price_rejection_days",
    "lost_after_off_platform_no_contact_days",
    "lost_after_price_days",
    "lost_after_indefinite_deferral_days",
    "due_soon_days",
)


def thresholds_from_settings(
    settings: Optional[Settings] = None,
    overrides: Optional[ThresholdsIn] = None,
) -> Thresholds:
    """Thresholds from settings, with per-request overrides; day counts floor at 1."""
    settings = settings or default_settings
    values = {name: getattr(settings, name) for name in Thresholds.__dataclass_fields__}
    if overrides is not None:
        values.update({key: value for key, value in overrides.model_dump().items() if value is not None})
    for name in DAY_THRESHOLDS:
        values[name] = max(1, values[name])
    return Thresholds(**values)


def _previous_state(raw: Optional[str]) -> Optional[ConversationState]:
    if not raw:
        return None
    try:
        return ConversationState(raw.strip().upper())
    except ValueError:
        return None


def build_context(
    request: InboxStateRequest,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> InboxStateMachineContext:
    signals_in = request.signals
    candidate = None
    if signals_in.explicit_lost_candidate is not None:
        raw = signals_in.explicit_lost_candidate
        candidate = ExplicitLostCandidate(
            code=raw.code,
            confidence=Confidence(raw.confidence),
            evidence=raw.evidence,
            message_id=raw.message_id,
        )
    timing_in = request.timing
    deferral_in = request.deferral
    now = request.now or now or datetime.now(timezone.utc)

    days_since_last_inbound = timing_in.days_since_last_inbound
    if days_since_last_inbound is None:
        days_since_last_inbound = days_since(timing_in.last_inbound_at, now)
    days_since_last_activity = timing_in.days_since_last_activity
    if days_since_last_activity is None:
        days_since_last_activity = days_since(timing_in.last_message_at, now)

    return InboxStateMachineContext(
        now=now,
        previous_state=_previous_state(request.previous_state),
        counts=MessageCounts(**request.counts.model_dump()),
        timing=Timing(
            **timing_in.model_dump(
                exclude={"last_non_final_direction", "days_since_last_inbound", "days_since_last_activity"}
            ),
            days_since_last_inbound=days_since_last_inbound,
            days_since_last_activity=days_since_last_activity,
            last_non_final_direction=(
                MessageDirection(timing_in.last_non_final_direction) if timing_in.last_non_final_direction else None
            ),
        ),
        signals=HardSignals(
            **signals_in.model_dump(exclude={"explicit_lost_candidate"}),
            explicit_lost_candidate=candidate,
        ),
        deferral=DeferralSchedule(
            followup_due_at=deferral_in.followup_due_at,
            followup_due_source=(
                FollowupDueSource(deferral_in.followup_due_source) if deferral_in.followup_due_source else None
            ),
            use_ai_deferral=deferral_in.use_ai_deferral,
            has_season_hint=deferral_in.has_season_hint,
        ),
        thresholds=thresholds_from_settings(settings, request.thresholds),
    )
