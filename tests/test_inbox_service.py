from datetime import datetime, timezone

from inbox_triage.config import Settings
from inbox_triage.schemas.inbox import InboxStateRequest, ThresholdsIn
from inbox_triage.services.inbox_service import build_context, thresholds_from_settings
from inbox_triage.services.state_machine import (
    Confidence,
    ConversationState,
    FollowupDueSource,
    MessageDirection,
    Thresholds,
)


class TestThresholdsFromSettings:
    def test_defaults_match_settings(self):
        assert thresholds_from_settings(Settings()) == Thresholds()

    def test_day_counts_floor_at_one(self):
        thresholds = thresholds_from_settings(Settings(inactive_timeout_days=0, lost_after_price_days=-5))
        assert thresholds.inactive_timeout_days == 1
        assert thresholds.lost_after_price_days == 1

    def test_request_overrides(self):
        thresholds = thresholds_from_settings(Settings(), ThresholdsIn(sla_hours=4, due_soon_days=0))
        assert thresholds.sla_hours == 4
        assert thresholds.due_soon_days == 1
        assert thresholds.inactive_timeout_days == 30


class TestBuildContext:
    def test_converts_request(self):
        request = InboxStateRequest.model_validate(
            {
                "now": "2024-06-12T12:00:00Z",
                "previous_state": "resurrected",
                "counts": {"message_count": 3, "inbound_count": 2, "outbound_count": 1},
                "timing": {
                    "last_non_final_message_at": "2024-06-11T09:00:00Z",
                    "last_non_final_direction": "inbound",
                },
                "signals": {
                    "has_deferral": True,
                    "explicit_lost_candidate": {"code": "LOST_DO_NOT_CONTACT", "confidence": "HIGH"},
                },
                "deferral": {"followup_due_at": "2024-07-01T00:00:00Z", "followup_due_source": "customer_intent"},
            }
        )
        context = build_context(request, Settings())

        assert context.now == datetime(2024, 6, 12, 12, 0, tzinfo=timezone.utc)
        assert context.previous_state == ConversationState.RESURRECTED
        assert context.counts.inbound_count == 2
        assert context.timing.last_non_final_direction == MessageDirection.INBOUND
        assert context.signals.has_deferral is True
        assert context.signals.explicit_lost_candidate.confidence == Confidence.HIGH
        assert context.deferral.followup_due_source == FollowupDueSource.CUSTOMER_INTENT
        assert context.thresholds == Thresholds()

    def test_unknown_previous_state_is_dropped(self):
        context = build_context(InboxStateRequest(previous_state="ZOMBIE"), Settings())
        assert context.previous_state is None

    def test_now_defaults(self):
        fixed = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert build_context(InboxStateRequest(), Settings(), now=fixed).now == fixed

    def test_ages_are_derived_from_timestamps(self):
        request = InboxStateRequest.model_validate(
            {
                "now": "2024-06-12T12:00:00Z",
                "timing": {
                    "last_inbound_at": "2024-06-10T12:00:00Z",
                    "last_message_at": "2024-06-11T00:00:00Z",
                },
            }
        )
        timing = build_context(request, Settings()).timing
        assert timing.days_since_last_inbound == 2.0
        assert timing.days_since_last_activity == 1.5

    def test_explicit_ages_win(self):
        request = InboxStateRequest.model_validate(
            {
                "now": "2024-06-12T12:00:00Z",
                "timing": {"last_inbound_at": "2024-06-10T12:00:00Z", "days_since_last_inbound": 40},
            }
        )
        assert build_context(request, Settings()).timing.days_since_last_inbound == 40
