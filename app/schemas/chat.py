from typing import Optional

from pydantic import BaseModel, ConfigDict


class ChatMessage(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    conversation_id: str
    user_id: Optional[str] = None
    message_type: Optional[str] = None
    message_content: Optional[str] = None
    image_url: Optional[str] = None
    dify_response: Optional[str] = None
    created_at: str
    updated_at: str


class ChatHistoryData(BaseModel):
    messages: list[ChatMessage]
    total: int
    limit: int
    offset: int


class ChatHistoryListResponse(BaseModel):
    success: bool
    data: ChatHistoryData


class ChatMessageResponse(BaseModel):
    success: bool
    data: ChatMessage
