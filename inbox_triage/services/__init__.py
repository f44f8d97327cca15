from inbox_triage.services.result import Result
from inbox_triage.services.state_machine import (
    ConversationState,
    InboxStateMachineContext,
    InboxStateMachineResult,
    evaluate_conversation_state,
)

__all__ = [
    "ConversationState",
    "InboxStateMachineContext",
    "InboxStateMachineResult",
    "Result",
    "evaluate_conversation_state",
]
