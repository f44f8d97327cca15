import inspect
import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from inbox_triage.logging_config import get_logger
from inbox_triage.services.ai_interpreter import (
    AiInterpretation,
    AiMode,
    BudgetDecision,
    FixtureLookup,
    build_input_seed,
    compute_input_hash,
    get_ai_mode,
    get_ai_prompt_input,
    interpret_ambiguity,
    should_allow_ai_call,
    should_run_ai,
    validate_ai_output,
)
from inbox_triage.services.llm.base import InferenceProvider

logger = get_logger("ai_run")

DEFAULT_AI_MODEL = "gpt-4o-mini"
DEFAULT_PROMPT_VERSION = "v1"
AI_TIMEOUT_MS_DEFAULT = 8000
AI_TIMEOUT_MS_MIN = 1000
AI_MAX_OUTPUT_TOKENS_DEFAULT = 128
AI_MAX_OUTPUT_TOKENS_MIN = 32
AI_MAX_INPUT_CHARS_DEFAULT = 1000
AI_MAX_INPUT_CHARS_MIN = 200
AI_MAX_INPUT_CHARS_MAX = 5000
AI_DAILY_BUDGET_DEFAULT = 25
AI_MAX_CALLS_PER_CONVERSATION_DEFAULT = 1

UsageIncrementer = Callable[[], Union[Awaitable[Optional[BudgetDecision]], Optional[BudgetDecision], None]]


class AiAttemptOutcome(str, Enum):
    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"
    INVALID_JSON = "invalid_json"


@dataclass(frozen=True)
class AiConfig:
    mode: AiMode = AiMode.OFF
    model: str = DEFAULT_AI_MODEL
    prompt_version: str = DEFAULT_PROMPT_VERSION
    timeout_ms: int = AI_TIMEOUT_MS_DEFAULT
    max_output_tokens: int = AI_MAX_OUTPUT_TOKENS_DEFAULT
    max_input_chars: int = AI_MAX_INPUT_CHARS_DEFAULT
    daily_budget: int = AI_DAILY_BUDGET_DEFAULT
    max_calls_per_conversation: int = AI_MAX_CALLS_PER_CONVERSATION_DEFAULT


@dataclass
class AiAttemptResult:
    input_hash: str
    input_chars: int
    input_truncated: bool
    interpretation: Optional[AiInterpretation] = None
    skipped_reason: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    attempted: bool = False
    attempt_outcome: Optional[AiAttemptOutcome] = None
    daily_calls: int = 0
    conversation_calls: int = 0
    cache_hit: bool = False


def _parse_number_env(value: Optional[str], fallback: float) -> float:
    if not value:
        return fallback
    try:
        parsed = float(value)
    except ValueError:
        return fallback
    return parsed if math.isfinite(parsed) else fallback


def resolve_ai_max_input_chars(raw: Optional[str] = None) -> int:
    parsed = _parse_number_env(raw, AI_MAX_INPUT_CHARS_DEFAULT)
    return min(AI_MAX_INPUT_CHARS_MAX, max(AI_MAX_INPUT_CHARS_MIN, round(parsed)))


def get_ai_config(env: Optional[Mapping[str, str]] = None) -> AiConfig:
    """Read the classifier AI settings from ``env`` (defaults to ``os.environ``)."""
    env = os.environ if env is None else env
    return AiConfig(
        mode=get_ai_mode(env.get("CLASSIFIER_AI_MODE")),
        model=(env.get("CLASSIFIER_AI_MODEL") or "").strip() or DEFAULT_AI_MODEL,
        prompt_version=(env.get("CLASSIFIER_AI_PROMPT_VERSION") or "").strip() or DEFAULT_PROMPT_VERSION,
        timeout_ms=int(max(AI_TIMEOUT_MS_MIN, _parse_number_env(env.get("CLASSIFIER_AI_TIMEOUT_MS"), AI_TIMEOUT_MS_DEFAULT))),
        max_output_tokens=int(
            max(
                AI_MAX_OUTPUT_TOKENS_MIN,
                _parse_number_env(env.get("CLASSIFIER_AI_MAX_OUTPUT_TOKENS"), AI_MAX_OUTPUT_TOKENS_DEFAULT),
            )
        ),
        max_input_chars=resolve_ai_max_input_chars(env.get("CLASSIFIER_AI_MAX_INPUT_CHARS")),
        daily_budget=int(max(0, _parse_number_env(env.get("CLASSIFIER_AI_DAILY_BUDGET_CALLS"), AI_DAILY_BUDGET_DEFAULT))),
        max_calls_per_conversation=int(
            max(
                0,
                _parse_number_env(
                    env.get("CLASSIFIER_AI_MAX_CALLS_PER_CONVERSATION_PER_DAY"),
                    AI_MAX_CALLS_PER_CONVERSATION_DEFAULT,
                ),
            )
        ),
    )


def classify_ai_attempt_outcome(error: BaseException) -> AiAttemptOutcome:
    message = str(error).lower()
    if "abort" in message or "timeout" in message:
        return AiAttemptOutcome.TIMEOUT
    if "ai_invalid_output" in message or "invalid" in message:
        return AiAttemptOutcome.INVALID_JSON
    return AiAttemptOutcome.ERROR


def _cached_interpretation(existing_ai: Optional[Mapping[str, Any]], input_hash: str) -> Optional[AiInterpretation]:
    if not existing_ai or existing_ai.get("input_hash") != input_hash:
        return None
    cached = existing_ai.get("interpretation")
    if isinstance(cached, AiInterpretation):
        return cached
    if not cached:
        return None
    validated = validate_ai_output(cached)
    if not validated.ok:
        logger.warning(f"Ignoring invalid cached interpretation: {validated.error_code}")
        return None
    return validated.value


async def _increment(increment_usage: Optional[UsageIncrementer]) -> Optional[BudgetDecision]:
    """Run the usage callback; a returned ``BudgetDecision`` says whether the call was counted."""
    if increment_usage is None:
        return None
    outcome = increment_usage()
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome if isinstance(outcome, BudgetDecision) else None


def _counted(reservation: Optional[BudgetDecision]) -> bool:
    return reservation is None or reservation.allowed


async def run_ai_attempt_for_message(
    *,
    config: AiConfig,
    message_text: str,
    context_digest: str,
    extracted_features: Mapping[str, Any],
    existing_ai: Optional[Mapping[str, Any]] = None,
    daily_calls: int = 0,
    conversation_calls: int = 0,
    increment_usage: Optional[UsageIncrementer] = None,
    provider: Optional[InferenceProvider] = None,
    fixture_lookup: Optional[FixtureLookup] = None,
) -> AiAttemptResult:
    """Run one gated, cached and budgeted interpretation attempt for a message.

    Never raises for interpreter failures: they come back as ``attempt_outcome``
    plus the error text in ``errors``. The budget check against ``daily_calls``
    and ``conversation_calls`` is a snapshot; ``increment_usage`` may return a
    ``BudgetDecision`` from a locked re-check, and a denied live reservation
    skips the attempt before any call is made. Live calls are counted before
    the call, mock and fixture calls only once they produce an interpretation.
    """
    prompt_input = get_ai_prompt_input(message_text, config.max_input_chars)
    input_hash = compute_input_hash(
        build_input_seed(prompt_input.normalized_text, config.prompt_version, config.model, context_digest)
    )
    result = AiAttemptResult(
        input_hash=input_hash,
        input_chars=prompt_input.input_chars,
        input_truncated=prompt_input.input_truncated,
        daily_calls=daily_calls,
        conversation_calls=conversation_calls,
    )

    decision = should_run_ai(message_text, extracted_features, config.mode)
    if not decision.run:
        result.skipped_reason = decision.reason
        logger.debug(f"AI attempt skipped: {decision.reason}")
        return result

    cached = _cached_interpretation(existing_ai, input_hash)
    if cached is not None:
        result.interpretation = cached
        result.skipped_reason = "cache_hit"
        result.cache_hit = True
        return result

    budget = should_allow_ai_call(
        daily_calls=daily_calls,
        conversation_calls=conversation_calls,
        max_daily=config.daily_budget,
        max_per_conversation=config.max_calls_per_conversation,
    )
    if not budget.allowed:
        result.skipped_reason = budget.reason or "budget_exceeded"
        logger.debug(f"AI attempt skipped: {result.skipped_reason}")
        return result

    result.attempted = True
    try:
        if config.mode == AiMode.LIVE:
            reservation = await _increment(increment_usage)
            if not _counted(reservation):
                # Lost the budget to a concurrent attempt after the snapshot check.
                result.attempted = False
                result.skipped_reason = reservation.reason or "budget_exceeded"
                logger.debug(f"AI attempt skipped: {result.skipped_reason}")
                return result
            result.daily_calls += 1
            result.conversation_calls += 1

        result.interpretation = await interpret_ambiguity(
            mode=config.mode,
            model=config.model,
            timeout_ms=config.timeout_ms,
            max_output_tokens=config.max_output_tokens,
            max_input_chars=config.max_input_chars,
            input_hash=input_hash,
            message_text=message_text,
            context_digest=context_digest,
            extracted_features=extracted_features,
            provider=provider,
            fixture_lookup=fixture_lookup,
        )
        result.attempt_outcome = AiAttemptOutcome.OK

        if config.mode != AiMode.LIVE and result.interpretation is not None:
            if _counted(await _increment(increment_usage)):
                result.daily_calls += 1
                result.conversation_calls += 1
    except Exception as exc:
        result.errors = [str(exc) or exc.__class__.__name__]
        result.attempt_outcome = classify_ai_attempt_outcome(exc)
        logger.warning(
            "AI attempt failed",
            extra={
                "context": {
                    "input_hash": input_hash,
                    "mode": config.mode.value,
                    "outcome": result.attempt_outcome.value,
                    "error": result.errors[0],
                }
            },
        )

    return result


def build_ai_feature_record(result: AiAttemptResult, config: AiConfig, now: Optional[datetime] = None) -> dict:
    """Render an attempt into the ``features["ai"]`` record stored on a message."""
    stamp = (now or datetime.now(timezone.utc)).isoformat()
    return {
        "input_hash": result.input_hash,
        "mode": config.mode.value,
        "model": config.model,
        "prompt_version": config.prompt_version,
        "input_truncated": result.input_truncated,
        "input_chars": result.input_chars,
        "attempted": result.attempted,
        "attempt_outcome": result.attempt_outcome.value if result.attempt_outcome else None,
        "ran_at": stamp if result.attempted else None,
        "interpretation": result.interpretation.to_dict() if result.interpretation else None,
        "skipped_reason": result.skipped_reason,
        "errors": list(result.errors),
        "updated_at": stamp,
    }
