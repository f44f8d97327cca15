"""Conversation lifecycle classifier.

``evaluate_conversation_state`` turns one snapshot of a conversation's signals
into a lifecycle verdict: state, confidence, reasons and a follow-up schedule.
It is a pure function of its input and never raises for odd input; anything it
cannot interpret falls through to ``NEW``/``LOW``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ConversationState(str, Enum):
    NEW = "NEW"
    ENGAGED = "ENGAGED"
    PRODUCTIVE = "PRODUCTIVE"
    HIGHLY_PRODUCTIVE = "HIGHLY_PRODUCTIVE"
    PRICE_GIVEN = "PRICE_GIVEN"
    DEFERRED = "DEFERRED"
    OFF_PLATFORM = "OFF_PLATFORM"
    CONVERTED = "CONVERTED"
    RESURRECTED = "RESURRECTED"  # only ever carried in as previous_state
    LOST = "LOST"
    SPAM = "SPAM"


class FollowupDueSource(str, Enum):
    CUSTOMER_INTENT = "customer_intent"
    DEFAULT = "default"
    UNKNOWN = "unknown"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


TERMINAL_STATES = frozenset({ConversationState.LOST, ConversationState.SPAM, ConversationState.CONVERTED})

SUGGEST_REPLY = "Reply recommended"
SUGGEST_FOLLOW_UP_LATER = "Follow up later"
SUGGEST_FOLLOW_UP_NOW = "Follow up now"
SUGGEST_OFF_PLATFORM = "Visibility lost (off-platform)"

DEFAULT_FOLLOWUP_BUSINESS_DAYS = 2
REPLY_PENDING_CODES = frozenset({"UNREPLIED", "SLA_BREACH"})


@dataclass(frozen=True)
class CodeReason:
    code: str


@dataclass(frozen=True)
class EvidencedReason:
    code: str
    confidence: Confidence
    evidence: Optional[str] = None


Reason = Union[CodeReason, EvidencedReason]


@dataclass(frozen=True)
class ExplicitLostCandidate:
    """Pre-classified loss signal from the extractor (e.g. do-not-contact wording)."""

    code: str
    confidence: Confidence
    evidence: Optional[str] = None
    message_id: Optional[str] = None


@dataclass(frozen=True)
class MessageCounts:
    message_count: int = 0
    inbound_count: int = 0
    outbound_count: int = 0
    inbound_count_non_final: int = 0


@dataclass(frozen=True)
class Timing:
    last_inbound_at: Optional[datetime] = None
    last_outbound_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    last_non_final_message_at: Optional[datetime] = None
    last_non_final_direction: Optional[MessageDirection] = None
    days_since_last_inbound: Optional[float] = None
    days_since_last_activity: Optional[float] = None


@dataclass(frozen=True)
class HardSignals:
    has_opt_out: bool = False
    has_blocked: bool = False
    has_bounced: bool = False
    has_explicit_rejection: bool = False
    has_explicit_rejection_revival: bool = False
    has_price_rejection: bool = False
    has_price_rejection_revival: bool = False
    has_indefinite_deferral: bool = False
    has_concrete_deferral: bool = False
    has_deferral: bool = False
    has_conversion: bool = False
    has_loss_phrase: bool = False
    has_off_platform: bool = False
    has_explicit_contact: bool = False
    off_platform_reason: Optional[str] = None
    has_price_mention: bool = False
    has_spam_phrase_match: bool = False
    spam_context_confirmed: bool = False
    has_spam_content: bool = False
    explicit_lost_candidate: Optional[ExplicitLostCandidate] = None


@dataclass(frozen=True)
class DeferralSchedule:
    followup_due_at: Optional[datetime] = None
    followup_due_source: Optional[FollowupDueSource] = None
    use_ai_deferral: bool = False
    has_season_hint: bool = False


@dataclass(frozen=True)
class Thresholds:
    sla_hours: float = 24
    due_soon_days: float = 3
    inactive_timeout_days: float = 30
    lost_after_price_rejection_days: float = 14
    lost_after_off_platform_no_contact_days: float = 21
    lost_after_price_days: float = 60
    lost_after_indefinite_deferral_days: float = 30


@dataclass(frozen=True)
class InboxStateMachineContext:
    now: datetime
    previous_state: Optional[ConversationState] = None
    counts: MessageCounts = field(default_factory=MessageCounts)
    timing: Timing = field(default_factory=Timing)
    signals: HardSignals = field(default_factory=HardSignals)
    deferral: DeferralSchedule = field(default_factory=DeferralSchedule)
    thresholds: Thresholds = field(default_factory=Thresholds)


@dataclass(frozen=True)
class InboxStateMachineResult:
    state: ConversationState
    confidence: Confidence
    reasons: tuple[Reason, ...]
    followup_due_at: Optional[datetime]
    followup_due_source: Optional[FollowupDueSource]
    followup_suggestion: Optional[str]
    needs_followup: bool
    state_trigger_message_id: Optional[str]


@dataclass
class _Draft:
    state: ConversationState
    confidence: Confidence
    reasons: list[Reason]
    due_at: Optional[datetime] = None
    due_source: Optional[FollowupDueSource] = None
    suggestion: Optional[str] = None
    needs_followup: bool = False
    trigger_message_id: Optional[str] = None

    def force_lost(self, confidence: Confidence) -> None:
        self.state = ConversationState.LOST
        self.confidence = confidence
        self.due_at = None
        self.due_source = None


def _ensure_timezone(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def has_reason(reasons, code: str) -> bool:
    return any(reason.code == code for reason in reasons)


def is_terminal_state(state: ConversationState) -> bool:
    return state in TERMINAL_STATES


def add_business_days(base: datetime, business_days: int) -> datetime:
    """Walk forward one UTC calendar day at a time, counting only Mon-Fri."""
    result = _ensure_timezone(base)
    added = 0
    while added < business_days:
        result += timedelta(days=1)
        if result.weekday() < 5:
            added += 1
    return result


def _due_soon_window(thresholds: Thresholds) -> timedelta:
    return timedelta(hours=max(thresholds.sla_hours, thresholds.due_soon_days * 24))


def _codes(*codes: str) -> list[Reason]:
    return [CodeReason(code) for code in codes]


def _resolve_progress_state(counts: MessageCounts, signals: HardSignals) -> tuple[ConversationState, Confidence]:
    if signals.has_deferral:
        return ConversationState.DEFERRED, Confidence.MEDIUM
    if signals.has_price_mention:
        return ConversationState.PRICE_GIVEN, Confidence.MEDIUM
    inbound, outbound = counts.inbound_count, counts.outbound_count
    if inbound >= 4 and outbound >= 4:
        return ConversationState.HIGHLY_PRODUCTIVE, Confidence.MEDIUM
    if inbound >= 2 and outbound >= 2:
        return ConversationState.PRODUCTIVE, Confidence.MEDIUM
    if inbound >= 1 and outbound >= 1:
        return ConversationState.ENGAGED, Confidence.LOW
    return ConversationState.NEW, Confidence.LOW


def _resolve_primary_state(context: InboxStateMachineContext, draft: _Draft) -> None:
    """First matching rule wins; each rule overrides everything below it."""
    signals = context.signals
    lost, high, medium = ConversationState.LOST, Confidence.HIGH, Confidence.MEDIUM

    if signals.has_opt_out:
        draft.state, draft.confidence, draft.reasons = lost, high, _codes("OPT_OUT")
    elif signals.has_blocked:
        draft.state, draft.confidence, draft.reasons = lost, high, _codes("BLOCKED_BY_RECIPIENT")
    elif signals.has_bounced:
        draft.state, draft.confidence, draft.reasons = lost, high, _codes("BOUNCED")
    elif signals.has_explicit_rejection and not signals.has_explicit_rejection_revival:
        draft.state, draft.confidence, draft.reasons = lost, high, _codes("EXPLICIT_REJECTION")
    elif signals.explicit_lost_candidate is not None:
        candidate = signals.explicit_lost_candidate
        draft.state = lost
        draft.confidence = candidate.confidence
        draft.reasons = [EvidencedReason(candidate.code, candidate.confidence, candidate.evidence)]
        draft.trigger_message_id = candidate.message_id
    elif signals.has_spam_phrase_match and signals.spam_context_confirmed:
        draft.state, draft.confidence = ConversationState.SPAM, high
        draft.reasons = _codes("SPAM_PHRASE_MATCH", "SPAM_CONTEXT_CONFIRMED")
        if signals.has_spam_content:
            draft.reasons.append(CodeReason("SPAM_CONTENT"))
    elif signals.has_price_rejection and not signals.has_price_rejection_revival:
        draft.state, draft.confidence, draft.reasons = lost, high, _codes("PRICE_REJECTION")
        if signals.has_indefinite_deferral:
            draft.reasons.append(CodeReason("WAIT_TO_PROCEED"))
    elif signals.has_indefinite_deferral and not signals.has_concrete_deferral:
        draft.state, draft.confidence, draft.reasons = lost, medium, _codes("INDEFINITE_DEFERRAL")
    elif signals.has_conversion:
        draft.state, draft.confidence = ConversationState.CONVERTED, high
        draft.reasons = _codes("CONVERSION_PHRASE")
    elif signals.has_loss_phrase:
        draft.state, draft.confidence, draft.reasons = lost, high, _codes("LOSS_PHRASE")
    elif signals.has_off_platform:
        draft.state, draft.confidence = ConversationState.OFF_PLATFORM, medium
        draft.reasons = _codes(signals.off_platform_reason) if signals.off_platform_reason else []
    else:
        draft.state, draft.confidence = _resolve_progress_state(context.counts, signals)
        draft.reasons = []
        if draft.state == ConversationState.DEFERRED:
            if context.deferral.use_ai_deferral:
                draft.reasons.append(CodeReason("AI_DEFERRED"))
            else:
                draft.reasons.append(CodeReason("DEFERRAL_PHRASE"))
                if context.deferral.has_season_hint:
                    draft.reasons.append(CodeReason("DEFERRAL_SEASON_PARSED"))
        elif draft.state == ConversationState.PRICE_GIVEN:
            draft.reasons.append(CodeReason("PRICE_MENTION"))


def _has_future_customer_intent_due(draft: _Draft, now: datetime) -> bool:
    if draft.due_at is None or draft.due_source != FollowupDueSource.CUSTOMER_INTENT:
        return False
    return draft.due_at > now


def _apply_staleness_overrides(context: InboxStateMachineContext, draft: _Draft, now: datetime) -> None:
    signals, timing, thresholds = context.signals, context.timing, context.thresholds
    days_inbound = timing.days_since_last_inbound
    days_activity = timing.days_since_last_activity

    if (
        draft.state == ConversationState.OFF_PLATFORM
        and not signals.has_explicit_contact
        and days_activity is not None
        and days_activity >= thresholds.lost_after_off_platform_no_contact_days
    ):
        draft.force_lost(Confidence.MEDIUM)
        draft.reasons = _codes("OFF_PLATFORM_NO_CONTACT_INFO", "OFF_PLATFORM_STALE")

    # Any revival flag suppresses the silence rule, however old the revival is.
    revived = signals.has_price_rejection_revival or signals.has_explicit_rejection_revival
    if (
        not is_terminal_state(draft.state)
        and draft.state != ConversationState.OFF_PLATFORM
        and days_inbound is not None
        and days_inbound >= thresholds.inactive_timeout_days
        and not _has_future_customer_intent_due(draft, now)
        and not revived
    ):
        # Customer silence is measured from the last inbound, not the last activity.
        draft.force_lost(Confidence.HIGH)
        draft.reasons = [
            CodeReason("INBOUND_STALE"),
            EvidencedReason("LOST_INACTIVE_TIMEOUT", Confidence.HIGH),
        ]

    if (
        draft.state != ConversationState.LOST
        and signals.has_price_rejection
        and not signals.has_price_rejection_revival
        and days_inbound is not None
        and days_inbound >= thresholds.lost_after_price_rejection_days
    ):
        draft.force_lost(Confidence.HIGH)
        draft.reasons.append(CodeReason("PRICE_REJECTION_STALE"))

    if (
        draft.state in (ConversationState.DEFERRED, ConversationState.PRODUCTIVE, ConversationState.ENGAGED)
        and signals.has_indefinite_deferral
        and not signals.has_concrete_deferral
        and days_activity is not None
        and days_activity >= thresholds.lost_after_indefinite_deferral_days
    ):
        draft.force_lost(Confidence.MEDIUM)
        if not has_reason(draft.reasons, "INDEFINITE_DEFERRAL"):
            draft.reasons.append(CodeReason("INDEFINITE_DEFERRAL"))

    if draft.state == ConversationState.PRICE_GIVEN:
        last_activity = _ensure_timezone(timing.last_outbound_at) or _ensure_timezone(timing.last_inbound_at)
        threshold = timedelta(days=thresholds.lost_after_price_days)
        if last_activity is not None and now - last_activity > threshold:
            draft.force_lost(Confidence.MEDIUM)
            draft.reasons.append(CodeReason("PRICE_STALE"))


def _schedule_followup(context: InboxStateMachineContext, draft: _Draft, now: datetime) -> None:
    thresholds, timing = context.thresholds, context.timing
    window = _due_soon_window(thresholds)

    if draft.state == ConversationState.DEFERRED:
        if draft.due_at is not None and draft.due_at > now:
            # Only a customer-stated date is authoritative enough to surface.
            if draft.due_source == FollowupDueSource.CUSTOMER_INTENT:
                draft.suggestion = SUGGEST_FOLLOW_UP_LATER
                draft.needs_followup = draft.due_at - now <= window
        else:
            draft.suggestion = SUGGEST_FOLLOW_UP_LATER
        return

    if draft.state == ConversationState.OFF_PLATFORM:
        draft.suggestion = SUGGEST_OFF_PLATFORM
        return

    if is_terminal_state(draft.state):
        return

    last_non_final_at = _ensure_timezone(timing.last_non_final_message_at)
    if last_non_final_at is None:
        return

    if timing.last_non_final_direction == MessageDirection.INBOUND:
        draft.suggestion = SUGGEST_REPLY
        draft.needs_followup = True
        if not has_reason(draft.reasons, "UNREPLIED"):
            draft.reasons.append(CodeReason("UNREPLIED"))
        age = now - last_non_final_at
        if age >= timedelta(hours=thresholds.sla_hours) and not has_reason(draft.reasons, "SLA_BREACH"):
            draft.reasons.append(CodeReason("SLA_BREACH"))
    elif timing.last_non_final_direction == MessageDirection.OUTBOUND:
        if draft.due_at is None:
            draft.due_at = add_business_days(last_non_final_at, DEFAULT_FOLLOWUP_BUSINESS_DAYS)
        if draft.due_source is None:
            draft.due_source = FollowupDueSource.DEFAULT
        if draft.due_source == FollowupDueSource.CUSTOMER_INTENT:
            draft.suggestion = SUGGEST_FOLLOW_UP_LATER if draft.due_at > now else SUGGEST_FOLLOW_UP_NOW
            draft.needs_followup = draft.due_at - now <= window


def _strip_reply_pending(reasons: list[Reason]) -> list[Reason]:
    return [reason for reason in reasons if reason.code not in REPLY_PENDING_CODES]


def evaluate_conversation_state(context: InboxStateMachineContext) -> InboxStateMachineResult:
    """Classify one conversation snapshot into its lifecycle state."""
    now = _ensure_timezone(context.now)
    draft = _Draft(
        state=context.previous_state or ConversationState.NEW,
        confidence=Confidence.LOW,
        reasons=[],
        due_at=_ensure_timezone(context.deferral.followup_due_at),
        due_source=context.deferral.followup_due_source,
    )
    if draft.due_at is not None and draft.due_source is None:
        draft.due_source = FollowupDueSource.UNKNOWN

    _resolve_primary_state(context, draft)
    _apply_staleness_overrides(context, draft, now)
    _schedule_followup(context, draft, now)

    if context.counts.inbound_count_non_final == 0:
        draft.reasons = _strip_reply_pending(draft.reasons)

    if is_terminal_state(draft.state):
        draft.suggestion = None
        draft.needs_followup = False
        draft.due_at = None
        draft.due_source = None
        draft.reasons = _strip_reply_pending(draft.reasons)

    if draft.due_at is not None and draft.due_source is None:
        draft.due_source = FollowupDueSource.UNKNOWN

    return InboxStateMachineResult(
        state=draft.state,
        confidence=draft.confidence,
        reasons=tuple(draft.reasons),
        followup_due_at=draft.due_at,
        followup_due_source=draft.due_source,
        followup_suggestion=draft.suggestion,
        needs_followup=draft.needs_followup,
        state_trigger_message_id=draft.trigger_message_id,
    )


def reason_to_json(reason: Reason) -> Union[str, dict]:
    if isinstance(reason, EvidencedReason):
        payload = {"code": reason.code, "confidence": reason.confidence.value}
        if reason.evidence is not None:
            payload["evidence"] = reason.evidence
        return payload
    return reason.code


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return _ensure_timezone(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def result_to_dict(result: InboxStateMachineResult) -> dict:
    """Render a result in its external JSON shape."""
    return {
        "state": result.state.value,
        "confidence": result.confidence.value,
        "reasons": [reason_to_json(reason) for reason in result.reasons],
        "followupDueAt": _isoformat(result.followup_due_at),
        "followupDueSource": result.followup_due_source.value if result.followup_due_source else None,
        "followupSuggestion": result.followup_suggestion,
        "needsFollowup": result.needs_followup,
        "stateTriggerMessageId": result.state_trigger_message_id,
    }
