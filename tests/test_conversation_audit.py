from datetime import datetime, timedelta, timezone

from inbox_triage.services.conversation_audit import (
    AUDIT_ALLOWED_LABELS,
    days_since,
    is_valid_audit_label,
    lost_reason_code,
    reason_codes_from_reasons,
    resolve_computed_classification,
)
from inbox_triage.services.state_machine import (
    CodeReason,
    Confidence,
    ConversationState,
    EvidencedReason,
    FollowupDueSource,
    InboxStateMachineResult,
)

NOW = datetime(2024, 6, 12, 12, 0, tzinfo=timezone.utc)


def off_platform_result():
    return InboxStateMachineResult(
        state=ConversationState.OFF_PLATFORM,
        confidence=Confidence.MEDIUM,
        reasons=(CodeReason("OFF_PLATFORM_PHONE"),),
        followup_due_at=NOW + timedelta(days=2),
        followup_due_source=FollowupDueSource.DEFAULT,
        followup_suggestion="Visibility lost (off-platform)",
        needs_followup=False,
        state_trigger_message_id=None,
    )


class TestAuditLabels:
    def test_resurrected_is_not_a_label(self):
        assert ConversationState.RESURRECTED not in AUDIT_ALLOWED_LABELS
        assert is_valid_audit_label("LOST") is True
        assert is_valid_audit_label("RESURRECTED") is False
        assert is_valid_audit_label("lost") is False


class TestDaysSince:
    def test_rounds_to_three_places(self):
        assert days_since(NOW - timedelta(hours=36), NOW) == 1.5
        assert days_since(NOW - timedelta(minutes=1), NOW) == 0.001

    def test_missing_timestamp(self):
        assert days_since(None, NOW) is None

    def test_naive_timestamp_is_utc(self):
        assert days_since(datetime(2024, 6, 10, 12, 0), NOW) == 2.0


class TestReasonCodes:
    def test_dedupes_in_order(self):
        reasons = [
            CodeReason("PRICE_MENTION"),
            EvidencedReason("LOST_INACTIVE_TIMEOUT", Confidence.HIGH),
            CodeReason("PRICE_MENTION"),
        ]
        assert reason_codes_from_reasons(reasons) == ["PRICE_MENTION", "LOST_INACTIVE_TIMEOUT"]

    def test_lost_reason_prefers_evidenced(self):
        reasons = [CodeReason("LOST_BARE"), EvidencedReason("LOST_DO_NOT_CONTACT", Confidence.HIGH, "stop")]
        assert lost_reason_code(reasons) == "LOST_DO_NOT_CONTACT"

    def test_lost_reason_falls_back_to_code(self):
        assert lost_reason_code([CodeReason("INBOUND_STALE"), CodeReason("LOST_BARE")]) == "LOST_BARE"
        assert lost_reason_code([CodeReason("OPT_OUT")]) is None


class TestComputedClassification:
    def test_operator_marks_converted(self):
        result = resolve_computed_classification(off_platform_result(), ConversationState.OFF_PLATFORM, "converted")
        assert result.state == ConversationState.CONVERTED
        assert result.confidence == Confidence.LOW
        assert [reason.code for reason in result.reasons] == ["OFF_PLATFORM_PHONE", "USER_ANNOTATION"]
        assert result.followup_due_at is None
        assert result.followup_due_source is None
        assert result.followup_suggestion is None

    def test_operator_marks_lost(self):
        result = resolve_computed_classification(off_platform_result(), ConversationState.OFF_PLATFORM, "lost")
        assert result.state == ConversationState.LOST

    def test_ignored_unless_still_off_platform(self):
        original = off_platform_result()
        assert resolve_computed_classification(original, ConversationState.ENGAGED, "lost") is original
        assert resolve_computed_classification(original, ConversationState.OFF_PLATFORM, None) is original
        assert resolve_computed_classification(original, ConversationState.OFF_PLATFORM, "maybe") is original
