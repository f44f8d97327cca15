from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable, Optional

from inbox_triage.services.state_machine import (
    CodeReason,
    Confidence,
    ConversationState,
    EvidencedReason,
    InboxStateMachineResult,
    Reason,
)

AUDIT_ALLOWED_LABELS = tuple(state for state in ConversationState if state != ConversationState.RESURRECTED)


def is_valid_audit_label(value: str) -> bool:
    return value in {state.value for state in AUDIT_ALLOWED_LABELS}


def days_since(ts: Optional[datetime], now: datetime) -> Optional[float]:
    """Fractional days between ``ts`` and ``now``, rounded to 3 places."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return round((now - ts).total_seconds() / 86400, 3)


def reason_codes_from_reasons(reasons: Iterable[Reason]) -> list[str]:
    ordered = []
    seen = set()
    for reason in reasons:
        if not reason.code or reason.code in seen:
            continue
        seen.add(reason.code)
        ordered.append(reason.code)
    return ordered


def lost_reason_code(reasons: Iterable[Reason]) -> Optional[str]:
    """Structured ``LOST_*`` code first, bare ``LOST_*`` code as fallback."""
    reasons = list(reasons)
    for reason in reasons:
        if isinstance(reason, EvidencedReason) and reason.code.startswith("LOST_"):
            return reason.code
    for reason in reasons:
        if isinstance(reason, CodeReason) and reason.code.startswith("LOST_"):
            return reason.code
    return None


def resolve_computed_classification(
    result: InboxStateMachineResult,
    current_state: Optional[ConversationState],
    off_platform_outcome: Optional[str],
) -> InboxStateMachineResult:
    """Apply an operator's outcome note on an off-platform conversation."""
    if (
        not off_platform_outcome
        or current_state != ConversationState.OFF_PLATFORM
        or result.state != ConversationState.OFF_PLATFORM
    ):
        return result

    if off_platform_outcome == "converted":
        state = ConversationState.CONVERTED
    elif off_platform_outcome == "lost":
        state = ConversationState.LOST
    else:
        return result

    # Terminal now, so nothing is left to follow up on.
    return replace(
        result,
        state=state,
        confidence=Confidence.LOW,
        reasons=result.reasons + (CodeReason("USER_ANNOTATION"),),
        followup_due_at=None,
        followup_due_source=None,
        followup_suggestion=None,
        needs_followup=False,
    )
