import asyncio
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from inbox_triage.config import settings
from inbox_triage.database import get_db
from inbox_triage.logging_config import LoggerAdapter, get_logger
from inbox_triage.schemas.inbox import (
    AiAttemptRequest,
    AiGateRequest,
    AiGateResponse,
    InboxStateRequest,
    InboxStateResponse,
)
from inbox_triage.services.ai_interpreter import (
    AiMode,
    FixtureLookup,
    build_context_digest,
    directory_fixture_lookup,
    get_ai_mode,
    should_run_ai,
)
from inbox_triage.services.ai_run import (
    AiConfig,
    build_ai_feature_record,
    get_ai_config,
    run_ai_attempt_for_message,
)
from inbox_triage.services.inbox_service import build_context
from inbox_triage.services.llm import InferenceProvider, OpenAIProvider
from inbox_triage.services.state_machine import evaluate_conversation_state, result_to_dict
from inbox_triage.services.usage_service import get_usage_counts, make_usage_incrementer, usage_day

logger = get_logger("inbox_router")

router = APIRouter()


def _build_provider(config: AiConfig) -> Optional[InferenceProvider]:
    if config.mode != AiMode.LIVE or not settings.openai_api_key:
        return None
    return OpenAIProvider(
        api_key=settings.openai_api_key,
        default_model=config.model,
        base_url=settings.openai_base_url,
    )


def _build_fixture_lookup(config: AiConfig) -> Optional[FixtureLookup]:
    if config.mode != AiMode.FIXTURE or not settings.ai_fixture_dir:
        return None
    return directory_fixture_lookup(settings.ai_fixture_dir)


@router.post("/inbox/state", response_model=InboxStateResponse)
def inbox_state(request: InboxStateRequest):
    """Classify one conversation snapshot."""
    context = build_context(request)
    result = evaluate_conversation_state(context)
    logger.info(
        "Conversation classified",
        extra={"context": {"state": result.state.value, "needs_followup": result.needs_followup}},
    )
    return result_to_dict(result)


@router.post("/ai/gate", response_model=AiGateResponse)
def ai_gate(request: AiGateRequest):
    """Report whether an interpretation attempt would run for this message."""
    mode = get_ai_mode(request.mode) if request.mode else get_ai_config().mode
    decision = should_run_ai(request.message_text, request.extracted_features, mode)
    return AiGateResponse(
        run=decision.run,
        reason=decision.reason,
        needs_handoff=decision.needs_handoff,
        needs_deferred=decision.needs_deferred,
    )


def _usage_snapshot(db: Session, conversation_id: str, day: str) -> tuple[int, int]:
    counts = get_usage_counts(db, conversation_id, day)
    # End the read transaction before the inference call is awaited.
    db.rollback()
    return counts


@router.post("/ai/attempt")
async def ai_attempt(request: AiAttemptRequest, db: Session = Depends(get_db)):
    """Run one budgeted interpretation attempt and return its feature record."""
    log = LoggerAdapter(logger, {"conversation_id": request.conversation_id})
    config = get_ai_config()
    day = usage_day()
    daily_calls, conversation_calls = await asyncio.to_thread(_usage_snapshot, db, request.conversation_id, day)

    result = await run_ai_attempt_for_message(
        config=config,
        message_text=request.message_text,
        context_digest=build_context_digest([message.model_dump() for message in request.context_messages]),
        extracted_features=request.extracted_features,
        existing_ai=request.existing_ai,
        daily_calls=daily_calls,
        conversation_calls=conversation_calls,
        increment_usage=make_usage_incrementer(
            db,
            request.conversation_id,
            day,
            max_daily=config.daily_budget,
            max_per_conversation=config.max_calls_per_conversation,
        ),
        provider=_build_provider(config),
        fixture_lookup=_build_fixture_lookup(config),
    )

    log.info(
        "AI attempt finished",
        context={
            "attempted": result.attempted,
            "outcome": result.attempt_outcome.value if result.attempt_outcome else None,
            "skipped_reason": result.skipped_reason,
        },
    )
    return build_ai_feature_record(result, config)
