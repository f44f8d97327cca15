"""Per-sync-run counters for interpretation attempts."""

from dataclasses import asdict, dataclass, field
from typing import Optional

from inbox_triage.services.ai_interpreter import AiInterpretation

SKIP_BUCKETS = ("cache_hit", "no_keywords", "budget_exceeded", "per_convo_cap", "hard_signal", "mode_off")

SKIP_REASON_MAP = {
    "cache_hit": "cache_hit",
    "keyword_gate": "no_keywords",
    "empty_message": "no_keywords",
    "ai_disabled": "mode_off",
    "hard_signal_present": "hard_signal",
    "daily_budget_exceeded": "budget_exceeded",
    "budget_exceeded": "budget_exceeded",
    "conversation_budget_exceeded": "per_convo_cap",
    "per_convo_cap": "per_convo_cap",
}


def _confidence_histogram() -> dict[str, int]:
    return {"HIGH": 0, "MEDIUM": 0, "LOW": 0}


@dataclass
class AiRunResults:
    handoff_true: int = 0
    deferred_true: int = 0
    handoff_conf: dict[str, int] = field(default_factory=_confidence_histogram)
    deferred_conf: dict[str, int] = field(default_factory=_confidence_histogram)


@dataclass
class AiRunStats:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    invalid_json: int = 0
    timeout: int = 0
    skipped: dict[str, int] = field(default_factory=lambda: {bucket: 0 for bucket in SKIP_BUCKETS})
    results: AiRunResults = field(default_factory=AiRunResults)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class AiAttemptSummary:
    """The slice of an attempt the stats care about; ``AiAttemptResult`` fits it too."""

    attempted: bool
    attempt_outcome: Optional[str] = None
    skipped_reason: Optional[str] = None
    interpretation: Optional[AiInterpretation] = None


def create_ai_run_stats() -> AiRunStats:
    return AiRunStats()


def record_ai_run_skip(stats: AiRunStats, bucket: str) -> None:
    stats.skipped[bucket] += 1


def _record_confidence(histogram: dict[str, int], confidence) -> None:
    value = getattr(confidence, "value", confidence)
    if value in histogram:
        histogram[value] += 1


def record_ai_run_attempt(stats: AiRunStats, attempt) -> None:
    """Fold one attempt into the run's counters."""
    if attempt.skipped_reason:
        bucket = SKIP_REASON_MAP.get(attempt.skipped_reason)
        if bucket:
            record_ai_run_skip(stats, bucket)

    if not attempt.attempted:
        return

    stats.attempted += 1
    outcome = getattr(attempt.attempt_outcome, "value", attempt.attempt_outcome)
    if outcome == "invalid_json":
        stats.invalid_json += 1
    if outcome == "timeout":
        stats.timeout += 1

    interpretation = attempt.interpretation
    if interpretation is None:
        stats.failed += 1
        return

    stats.succeeded += 1
    if interpretation.handoff.is_handoff:
        stats.results.handoff_true += 1
        _record_confidence(stats.results.handoff_conf, interpretation.handoff.confidence)
    if interpretation.deferred.is_deferred:
        stats.results.deferred_true += 1
        _record_confidence(stats.results.deferred_conf, interpretation.deferred.confidence)


def summarize_ai_run_stats(stats: AiRunStats) -> dict:
    top = None
    for reason, count in stats.skipped.items():
        if count > 0 and (top is None or count > top["count"]):
            top = {"reason": reason, "count": count}
    return {
        "attempted": stats.attempted,
        "succeeded": stats.succeeded,
        "failed": stats.failed,
        "skippedTop": top,
        "results": {
            "handoff_true": stats.results.handoff_true,
            "deferred_true": stats.results.deferred_true,
        },
    }
