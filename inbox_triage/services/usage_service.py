"""Daily AI call counters backing the orchestrator's budget check.

The counters are keyed by UTC day and by (conversation, day).
``get_usage_counts`` is an unlocked snapshot, good only for the early budget
check. ``reserve_usage`` is the authoritative step: it locks both rows
(creating them when missing), re-checks the budget under the lock and counts
the call only when it still fits, so two attempts racing on the same key
cannot both get through. ``make_usage_incrementer`` runs that step in its own
short transaction off the event loop, so no row lock is held while an
inference call is awaited.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from inbox_triage.logging_config import get_logger
from inbox_triage.models import AiUsageConversationDaily, AiUsageDaily
from inbox_triage.services.ai_interpreter import BudgetDecision, should_allow_ai_call

logger = get_logger("usage_service")


def usage_day(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m-%d")


def get_usage_counts(db: Session, conversation_id: str, day: str) -> tuple[int, int]:
    """Return ``(daily_calls, conversation_calls)`` for the day, without locking."""
    daily = db.query(AiUsageDaily).filter(AiUsageDaily.date == day).first()
    per_conversation = (
        db.query(AiUsageConversationDaily)
        .filter(
            AiUsageConversationDaily.conversation_id == conversation_id,
            AiUsageConversationDaily.date == day,
        )
        .first()
    )
    daily_calls = daily.calls if daily and daily.calls else 0
    conversation_calls = per_conversation.calls if per_conversation and per_conversation.calls else 0
    return daily_calls, conversation_calls


def _lock_usage_rows(
    db: Session,
    conversation_id: str,
    day: str,
    now: datetime,
) -> tuple[AiUsageDaily, AiUsageConversationDaily]:
    # Always daily first, then conversation, so concurrent lockers cannot deadlock.
    db.execute(
        insert(AiUsageDaily)
        .values(date=day, calls=0, updated_at=now)
        .on_conflict_do_nothing(index_elements=["date"])
    )
    db.execute(
        insert(AiUsageConversationDaily)
        .values(conversation_id=conversation_id, date=day, calls=0)
        .on_conflict_do_nothing(index_elements=["conversation_id", "date"])
    )
    daily = db.query(AiUsageDaily).filter(AiUsageDaily.date == day).with_for_update().one()
    per_conversation = (
        db.query(AiUsageConversationDaily)
        .filter(
            AiUsageConversationDaily.conversation_id == conversation_id,
            AiUsageConversationDaily.date == day,
        )
        .with_for_update()
        .one()
    )
    return daily, per_conversation


def _count_call(
    db: Session,
    daily: AiUsageDaily,
    per_conversation: AiUsageConversationDaily,
    now: datetime,
) -> tuple[int, int]:
    daily.calls = (daily.calls or 0) + 1
    daily.updated_at = now
    per_conversation.calls = (per_conversation.calls or 0) + 1
    db.flush()
    return daily.calls, per_conversation.calls


def increment_usage(
    db: Session,
    conversation_id: str,
    day: str,
    now: Optional[datetime] = None,
) -> tuple[int, int]:
    """Add one call to both counters unconditionally and return the new totals."""
    now = now or datetime.now(timezone.utc)
    daily, per_conversation = _lock_usage_rows(db, conversation_id, day, now)
    totals = _count_call(db, daily, per_conversation, now)
    logger.debug(
        "AI usage incremented",
        extra={"context": {"conversation_id": conversation_id, "date": day, "totals": totals}},
    )
    return totals


def reserve_usage(
    db: Session,
    conversation_id: str,
    day: str,
    max_daily: int,
    max_per_conversation: int,
    now: Optional[datetime] = None,
) -> BudgetDecision:
    """Count one call if the locked counters still allow it. Callers own the commit."""
    now = now or datetime.now(timezone.utc)
    daily, per_conversation = _lock_usage_rows(db, conversation_id, day, now)
    decision = should_allow_ai_call(
        daily_calls=daily.calls or 0,
        conversation_calls=per_conversation.calls or 0,
        max_daily=max_daily,
        max_per_conversation=max_per_conversation,
    )
    if not decision.allowed:
        logger.info(
            "AI usage reservation denied",
            extra={"context": {"conversation_id": conversation_id, "date": day, "reason": decision.reason}},
        )
        return decision

    totals = _count_call(db, daily, per_conversation, now)
    logger.debug(
        "AI usage reserved",
        extra={"context": {"conversation_id": conversation_id, "date": day, "totals": totals}},
    )
    return decision


def make_usage_incrementer(
    db: Session,
    conversation_id: str,
    day: str,
    max_daily: int,
    max_per_conversation: int,
) -> Callable[[], Awaitable[BudgetDecision]]:
    """Build the orchestrator's usage callback: reserve and commit in a worker thread."""

    def _reserve_and_commit() -> BudgetDecision:
        try:
            decision = reserve_usage(db, conversation_id, day, max_daily, max_per_conversation)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return decision

    async def _reserve() -> BudgetDecision:
        return await asyncio.to_thread(_reserve_and_commit)

    return _reserve
