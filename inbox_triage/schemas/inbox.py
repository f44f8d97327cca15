from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field


class MessageCountsIn(BaseModel):
    message_count: int = 0
    inbound_count: int = 0
    outbound_count: int = 0
    inbound_count_non_final: int = 0


class TimingIn(BaseModel):
    last_inbound_at: Optional[datetime] = None
    last_outbound_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    last_non_final_message_at: Optional[datetime] = None
    last_non_final_direction: Optional[Literal["inbound", "outbound"]] = None
    days_since_last_inbound: Optional[float] = None
    days_since_last_activity: Optional[float] = None


class ExplicitLostCandidateIn(BaseModel):
    code: str
    confidence: Literal["HIGH", "MEDIUM", "LOW"]
    evidence: Optional[str] = None
    message_id: Optional[str] = None


class HardSignalsIn(BaseModel):
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
    explicit_lost_candidate: Optional[ExplicitLostCandidateIn] = None


class DeferralIn(BaseModel):
    followup_due_at: Optional[datetime] = None
    followup_due_source: Optional[Literal["customer_intent", "default", "unknown"]] = None
    use_ai_deferral: bool = False
    has_season_hint: bool = False


class ThresholdsIn(BaseModel):
    sla_hours: Optional[float] = None
    due_soon_days: Optional[float] = None
    inactive_timeout_days: Optional[float] = None
    lost_after_price_rejection_days: Optional[float] = None
    lost_after_off_platform_no_contact_days: Optional[float] = None
    lost_after_price_days: Optional[float] = None
    lost_after_indefinite_deferral_days: Optional[float] = None


class InboxStateRequest(BaseModel):
    now: Optional[datetime] = None
    previous_state: Optional[str] = None
    counts: MessageCountsIn = Field(default_factory=MessageCountsIn)
    timing: TimingIn = Field(default_factory=TimingIn)
    signals: HardSignalsIn = Field(default_factory=HardSignalsIn)
    deferral: DeferralIn = Field(default_factory=DeferralIn)
    thresholds: ThresholdsIn = Field(default_factory=ThresholdsIn)


class InboxStateResponse(BaseModel):
    state: str
    confidence: str
    reasons: list[Union[str, dict[str, Any]]]
    followupDueAt: Optional[str] = None
    followupDueSource: Optional[str] = None
    followupSuggestion: Optional[str] = None
    needsFollowup: bool
    stateTriggerMessageId: Optional[str] = None


class AiGateRequest(BaseModel):
    message_text: Optional[str] = None
    extracted_features: dict[str, Any] = Field(default_factory=dict)
    mode: Optional[str] = None


class AiGateResponse(BaseModel):
    run: bool
    reason: str
    needs_handoff: bool
    needs_deferred: bool


class ContextMessageIn(BaseModel):
    direction: Literal["inbound", "outbound"]
    text: Optional[str] = None


class AiAttemptRequest(BaseModel):
    conversation_id: str
    message_text: str
    context_messages: list[ContextMessageIn] = Field(default_factory=list)
    extracted_features: dict[str, Any] = Field(default_factory=dict)
    existing_ai: Optional[dict[str, Any]] = None
