from inbox_triage.models.ai_usage import AiUsageConversationDaily, AiUsageDaily

__all__ = [
    "AiUsageDaily",
    "AiUsageConversationDaily",
]
