"""Ambiguity interpreter: gate, prompt, execution modes and output validation.

Hard keyword/regex signals cannot tell whether "text me next month" is a
handoff, a deferral, or both. This module decides when an inference call is
worth making, builds the prompt, runs it (live, mock or fixture) and validates
the structured answer before anything downstream may use it.
"""

import asyncio
import hashlib
import json
import re
import time
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from inbox_triage.logging_config import get_logger, log_timing
from inbox_triage.services.llm.base import InferenceProvider
from inbox_triage.services.result import Result
from inbox_triage.services.state_machine import Confidence

logger = get_logger("ai_interpreter")

EVIDENCE_MAX_CHARS = 120
CONTEXT_DIGEST_LIMIT = 4
CONTEXT_DIGEST_MAX_CHARS = 120
CONTEXT_DIGEST_SEPARATOR = " | "


class AiMode(str, Enum):
    OFF = "off"
    LIVE = "live"
    MOCK = "mock"
    FIXTURE = "fixture"


class AiHandoffType(str, Enum):
    PHONE = "phone"
    EMAIL = "email"
    WEBSITE = "website"
    IN_PERSON = "in_person"
    OTHER = "other"


class AiDeferredBucket(str, Enum):
    EXACT_DATE = "EXACT_DATE"
    NEXT_WEEK = "NEXT_WEEK"
    NEXT_MONTH = "NEXT_MONTH"
    NEXT_QUARTER = "NEXT_QUARTER"
    AFTER_HOLIDAYS = "AFTER_HOLIDAYS"
    SOMETIME_LATER = "SOMETIME_LATER"


class AiInterpreterError(Exception):
    """Base class for attempt-level interpreter failures."""


class AiInvalidOutputError(AiInterpreterError):
    pass


class AiTimeoutError(AiInterpreterError):
    pass


class AiFixtureError(AiInterpreterError):
    pass


class AiProviderMissingError(AiInterpreterError):
    pass


HANDOFF_KEYWORDS = (
    "call",
    "phone",
    "text",
    "sms",
    "cell",
    "number",
    "reach out",
    "offline",
    "email",
    "contact me",
    "whatsapp",
)

DEFER_KEYWORDS = (
    "next",
    "later",
    "after",
    "holiday",
    "holidays",
    "month",
    "week",
    "year",
    "q1",
    "q2",
    "q3",
    "q4",
    "summer",
    "winter",
    "spring",
    "fall",
    "circle back",
    "touch base",
    "check back",
)

SYSTEM_INSTRUCTION = "Return valid JSON only. No prose. If unsure set LOW confidence and prefer false."

JSON_SCHEMA_HINT = """Return JSON only in this exact shape:
{
  "handoff": {
    "is_handoff": true|false,
    "type": "phone"|"email"|"website"|"in_person"|"other"|null,
    "confidence": "HIGH"|"MEDIUM"|"LOW",
    "evidence": "short excerpt"
  },
  "deferred": {
    "is_deferred": true|false,
    "bucket": "EXACT_DATE"|"NEXT_WEEK"|"NEXT_MONTH"|"NEXT_QUARTER"|"AFTER_HOLIDAYS"|"SOMETIME_LATER"|null,
    "due_date_iso": "YYYY-MM-DD"|null,
    "confidence": "HIGH"|"MEDIUM"|"LOW",
    "evidence": "short excerpt"
  }
}"""

MOCK_DEFERRED_PATTERN = re.compile(r"(next month|after the holidays|after holidays|next week|next quarter|next year)")
MOCK_HANDOFF_PATTERN = re.compile(r"(call me|text me|reach out|contact me|phone|whatsapp)")
DUE_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

FixtureLookup = Callable[[str], Optional[Any]]


@dataclass(frozen=True)
class HandoffInterpretation:
    is_handoff: bool
    type: Optional[AiHandoffType]
    confidence: Confidence
    evidence: str


@dataclass(frozen=True)
class DeferredInterpretation:
    is_deferred: bool
    bucket: Optional[AiDeferredBucket]
    due_date_iso: Optional[str]
    confidence: Confidence
    evidence: str


@dataclass(frozen=True)
class AiInterpretation:
    handoff: HandoffInterpretation
    deferred: DeferredInterpretation

    def to_dict(self) -> dict:
        return {
            "handoff": {
                "is_handoff": self.handoff.is_handoff,
                "type": self.handoff.type.value if self.handoff.type else None,
                "confidence": self.handoff.confidence.value,
                "evidence": self.handoff.evidence,
            },
            "deferred": {
                "is_deferred": self.deferred.is_deferred,
                "bucket": self.deferred.bucket.value if self.deferred.bucket else None,
                "due_date_iso": self.deferred.due_date_iso,
                "confidence": self.deferred.confidence.value,
                "evidence": self.deferred.evidence,
            },
        }


@dataclass(frozen=True)
class AiPromptInput:
    prompt_text: str
    normalized_text: str
    input_chars: int
    input_truncated: bool


@dataclass(frozen=True)
class ShouldRunAiResult:
    run: bool
    reason: str
    needs_handoff: bool = False
    needs_deferred: bool = False


@dataclass(frozen=True)
class BudgetDecision:
    allowed: bool
    reason: Optional[str] = None


def get_ai_mode(raw: Optional[str]) -> AiMode:
    value = (raw or "").strip().lower()
    if value in {"live", "workers_ai"}:
        return AiMode.LIVE
    if value == "mock":
        return AiMode.MOCK
    if value == "fixture":
        return AiMode.FIXTURE
    return AiMode.OFF


def normalize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"\s+", " ", value.strip().lower())


def get_ai_prompt_input(message_text: str, max_input_chars: int) -> AiPromptInput:
    safe_max = max(1, int(max_input_chars))
    text = message_text or ""
    truncated = len(text) > safe_max
    prompt_text = text[:safe_max] if truncated else text
    return AiPromptInput(
        prompt_text=prompt_text,
        normalized_text=normalize_text(prompt_text),
        input_chars=len(prompt_text),
        input_truncated=truncated,
    )


def build_context_digest(messages: Iterable[Mapping[str, Any]], limit: int = CONTEXT_DIGEST_LIMIT) -> str:
    """Direction-tagged digest of the last few messages, each clipped to 120 chars."""
    window = list(messages)[-limit:] if limit > 0 else []
    parts = []
    for message in window:
        text = message.get("text") or ""
        if len(text) > CONTEXT_DIGEST_MAX_CHARS:
            text = f"{text[:CONTEXT_DIGEST_MAX_CHARS - 3]}..."
        parts.append(f"{message.get('direction')}:{text}")
    return CONTEXT_DIGEST_SEPARATOR.join(parts)


def build_input_seed(normalized_text: str, prompt_version: str, model: str, context_digest: str) -> str:
    return f"{normalized_text}|{prompt_version}|{model}|{context_digest}"


def compute_input_hash(seed: str) -> str:
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def should_run_ai(
    message_text: Optional[str],
    extracted_features: Optional[Mapping[str, Any]],
    mode: AiMode,
) -> ShouldRunAiResult:
    """Decide whether an inference call could resolve something hard signals did not."""
    if mode == AiMode.OFF:
        return ShouldRunAiResult(run=False, reason="ai_disabled")

    normalized = normalize_text(message_text)
    if not normalized:
        return ShouldRunAiResult(run=False, reason="empty_message")

    handoff_keyword = any(word in normalized for word in HANDOFF_KEYWORDS)
    deferred_keyword = any(word in normalized for word in DEFER_KEYWORDS)
    if not handoff_keyword and not deferred_keyword:
        return ShouldRunAiResult(run=False, reason="keyword_gate")

    features = extracted_features or {}
    needs_handoff = handoff_keyword and not features.get("has_phone_number") and not features.get("has_email")
    needs_deferred = deferred_keyword and not features.get("deferral_date_hint")
    if not needs_handoff and not needs_deferred:
        return ShouldRunAiResult(run=False, reason="hard_signal_present")

    return ShouldRunAiResult(
        run=True,
        reason="eligible",
        needs_handoff=needs_handoff,
        needs_deferred=needs_deferred,
    )


def _clamp_evidence(value: str) -> str:
    return value[:EVIDENCE_MAX_CHARS]


def _is_one_of(value: Any, allowed: set[str]) -> bool:
    return isinstance(value, str) and value in allowed


def _valid_due_date(value: Any) -> bool:
    if value is None:
        return True
    if not isinstance(value, str) or not DUE_DATE_PATTERN.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def validate_ai_output(raw: Any) -> Result[AiInterpretation]:
    """Strictly validate a raw interpretation (JSON text or decoded object)."""
    obj = raw
    if isinstance(raw, (str, bytes)):
        try:
            obj = json.loads(raw)
        except ValueError as exc:
            return Result.failure(f"not valid JSON: {exc}", "invalid_json")
    if not isinstance(obj, Mapping):
        return Result.failure("interpretation is not an object", "not_an_object")

    handoff = obj.get("handoff")
    deferred = obj.get("deferred")
    if not handoff or not deferred:
        return Result.failure("handoff and deferred are both required", "missing_section")
    if not isinstance(handoff, Mapping) or not isinstance(deferred, Mapping):
        return Result.failure("handoff and deferred must be objects", "not_an_object")

    confidences = {item.value for item in Confidence}
    handoff_types = {item.value for item in AiHandoffType}
    buckets = {item.value for item in AiDeferredBucket}

    if not isinstance(handoff.get("is_handoff"), bool):
        return Result.failure("handoff.is_handoff must be a boolean", "invalid_handoff")
    handoff_type = handoff.get("type")
    if handoff_type is not None and not _is_one_of(handoff_type, handoff_types):
        return Result.failure(f"unknown handoff.type {handoff_type!r}", "invalid_type")
    if not _is_one_of(handoff.get("confidence"), confidences):
        return Result.failure(f"bad handoff.confidence {handoff.get('confidence')!r}", "invalid_confidence")
    if not isinstance(handoff.get("evidence"), str):
        return Result.failure("handoff.evidence must be a string", "invalid_evidence")

    if not isinstance(deferred.get("is_deferred"), bool):
        return Result.failure("deferred.is_deferred must be a boolean", "invalid_deferred")
    bucket = deferred.get("bucket")
    if bucket is not None and not _is_one_of(bucket, buckets):
        return Result.failure(f"unknown deferred.bucket {bucket!r}", "invalid_bucket")
    if not _is_one_of(deferred.get("confidence"), confidences):
        return Result.failure(f"bad deferred.confidence {deferred.get('confidence')!r}", "invalid_confidence")
    if not isinstance(deferred.get("evidence"), str):
        return Result.failure("deferred.evidence must be a string", "invalid_evidence")
    if not _valid_due_date(deferred.get("due_date_iso")):
        return Result.failure(f"bad deferred.due_date_iso {deferred.get('due_date_iso')!r}", "invalid_due_date")

    return Result.success(
        AiInterpretation(
            handoff=HandoffInterpretation(
                is_handoff=handoff["is_handoff"],
                type=AiHandoffType(handoff_type) if handoff_type is not None else None,
                confidence=Confidence(handoff["confidence"]),
                evidence=_clamp_evidence(handoff["evidence"]),
            ),
            deferred=DeferredInterpretation(
                is_deferred=deferred["is_deferred"],
                bucket=AiDeferredBucket(bucket) if bucket is not None else None,
                due_date_iso=deferred.get("due_date_iso"),
                confidence=Confidence(deferred["confidence"]),
                evidence=_clamp_evidence(deferred["evidence"]),
            ),
        )
    )


def mock_interpretation(prompt_input: AiPromptInput) -> AiInterpretation:
    """Deterministic keyword heuristic standing in for the provider."""
    lower = prompt_input.normalized_text
    excerpt = prompt_input.prompt_text[:EVIDENCE_MAX_CHARS]

    is_deferred = bool(MOCK_DEFERRED_PATTERN.search(lower))
    bucket = None
    if is_deferred:
        if "next month" in lower:
            bucket = AiDeferredBucket.NEXT_MONTH
        elif "next week" in lower:
            bucket = AiDeferredBucket.NEXT_WEEK
        elif "next quarter" in lower:
            bucket = AiDeferredBucket.NEXT_QUARTER
        elif "holiday" in lower:
            bucket = AiDeferredBucket.AFTER_HOLIDAYS
        else:
            bucket = AiDeferredBucket.SOMETIME_LATER

    is_handoff = bool(MOCK_HANDOFF_PATTERN.search(lower))
    return AiInterpretation(
        handoff=HandoffInterpretation(
            is_handoff=is_handoff,
            type=AiHandoffType.PHONE if is_handoff else None,
            confidence=Confidence.MEDIUM if is_handoff else Confidence.LOW,
            evidence=excerpt if is_handoff else "",
        ),
        deferred=DeferredInterpretation(
            is_deferred=is_deferred,
            bucket=bucket,
            due_date_iso=None,
            confidence=Confidence.MEDIUM if is_deferred else Confidence.LOW,
            evidence=excerpt if is_deferred else "",
        ),
    )


def directory_fixture_lookup(directory: Union[str, Path]) -> FixtureLookup:
    """Fixture lookup reading ``<directory>/<input_hash>.json``; None when absent."""
    root = Path(directory)

    def lookup(input_hash: str) -> Optional[Any]:
        path = root / f"{input_hash}.json"
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    return lookup


def build_prompt_payload(prompt_text: str, context_digest: str, extracted_features: Mapping[str, Any]) -> dict:
    user_content = (
        f"{JSON_SCHEMA_HINT}\n\nMessage:\n{prompt_text}\n\nContext:\n{context_digest}"
        f"\n\nExtracted features:\n{json.dumps(dict(extracted_features), ensure_ascii=False, default=str)}"
    )
    return {
        "messages": [
            {"role": "system", "content": SYSTEM_INSTRUCTION},
            {"role": "user", "content": user_content},
        ]
    }


def _unwrap_provider_output(raw: Any) -> Any:
    if isinstance(raw, Mapping) and "response" in raw:
        return raw["response"]
    return raw


async def interpret_ambiguity(
    *,
    mode: AiMode,
    model: str,
    timeout_ms: int,
    max_output_tokens: int,
    max_input_chars: int,
    input_hash: str,
    message_text: str,
    context_digest: str,
    extracted_features: Mapping[str, Any],
    provider: Optional[InferenceProvider] = None,
    fixture_lookup: Optional[FixtureLookup] = None,
) -> Optional[AiInterpretation]:
    """Produce a validated interpretation, or raise an ``AiInterpreterError``.

    Returns None when there is nothing to interpret (empty text, mode off).
    """
    prompt_input = get_ai_prompt_input(message_text, max_input_chars)
    if not prompt_input.normalized_text:
        return None

    if mode == AiMode.MOCK:
        return mock_interpretation(prompt_input)

    if mode == AiMode.FIXTURE:
        if fixture_lookup is None:
            raise AiFixtureError("ai_fixture_missing: no fixture lookup configured")
        content = fixture_lookup(input_hash)
        if content is None:
            raise AiFixtureError(f"ai_fixture_missing: {input_hash}")
        validated = validate_ai_output(content)
        if not validated.ok:
            raise AiFixtureError(f"ai_fixture_invalid: {validated.error_code}: {validated.error}")
        return validated.value

    if mode == AiMode.LIVE:
        if provider is None:
            raise AiProviderMissingError("ai_binding_missing")
        payload = build_prompt_payload(prompt_input.prompt_text, context_digest, extracted_features)
        timeout_seconds = timeout_ms / 1000
        started = time.monotonic()
        try:
            raw = await asyncio.wait_for(
                provider.run(model, payload, max_tokens=max_output_tokens, temperature=0.0),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            log_timing(
                logger,
                "ai_interpret_ms",
                (time.monotonic() - started) * 1000,
                model_name=model,
                timeout=True,
                timeout_seconds=timeout_seconds,
            )
            raise AiTimeoutError(f"ai_timeout after {timeout_ms}ms") from exc
        log_timing(logger, "ai_interpret_ms", (time.monotonic() - started) * 1000, model_name=model, timeout=False)

        validated = validate_ai_output(_unwrap_provider_output(raw))
        return validated.unwrap_or_raise(lambda detail: AiInvalidOutputError(f"ai_invalid_output: {detail}"))

    return None


def map_deferred_bucket_to_date(bucket: Union[AiDeferredBucket, str, None], now: datetime) -> date:
    """Map a deferral bucket to a UTC calendar date relative to ``now``."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    value = bucket.value if isinstance(bucket, AiDeferredBucket) else bucket
    if value == AiDeferredBucket.NEXT_WEEK.value:
        return (now + timedelta(days=7)).date()
    if value == AiDeferredBucket.NEXT_MONTH.value:
        return (now + timedelta(days=30)).date()
    if value == AiDeferredBucket.NEXT_QUARTER.value:
        return (now + timedelta(days=90)).date()
    if value == AiDeferredBucket.AFTER_HOLIDAYS.value:
        if now.month >= 11:
            return date(now.year + 1, 1, 15)
        return (now + timedelta(days=60)).date()
    return (now + timedelta(days=30)).date()


def resolve_ai_deferred_due_at(interpretation: Optional[AiInterpretation], now: datetime) -> Optional[datetime]:
    """Due date implied by an interpretation: explicit date first, then its bucket."""
    if interpretation is None or not interpretation.deferred.is_deferred:
        return None
    deferred = interpretation.deferred
    if deferred.due_date_iso:
        due_date = date.fromisoformat(deferred.due_date_iso)
    elif deferred.bucket is not None:
        due_date = map_deferred_bucket_to_date(deferred.bucket, now)
    else:
        return None
    return datetime.combine(due_date, dt_time.min, tzinfo=timezone.utc)


def should_allow_ai_call(
    daily_calls: int,
    conversation_calls: int,
    max_daily: int,
    max_per_conversation: int,
) -> BudgetDecision:
    if daily_calls >= max_daily:
        return BudgetDecision(allowed=False, reason="daily_budget_exceeded")
    if conversation_calls >= max_per_conversation:
        return BudgetDecision(allowed=False, reason="conversation_budget_exceeded")
    return BudgetDecision(allowed=True)
