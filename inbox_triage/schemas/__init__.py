from inbox_triage.schemas.inbox import (
    AiAttemptRequest,
    AiGateRequest,
    AiGateResponse,
    InboxStateRequest,
    InboxStateResponse,
)

__all__ = ["AiAttemptRequest", "AiGateRequest", "AiGateResponse", "InboxStateRequest", "InboxStateResponse"]
