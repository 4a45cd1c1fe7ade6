from app.schemas.chat import ChatHistoryListResponse, ChatMessage, ChatMessageResponse
from app.schemas.line import LineEvent, LineMessageWorkflowParams, LineWebhookBody

__all__ = [
    "ChatMessage",
    "ChatHistoryListResponse",
    "ChatMessageResponse",
    "LineEvent",
    "LineWebhookBody",
    "LineMessageWorkflowParams",
]
