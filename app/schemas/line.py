from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class LineSource(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    userId: Optional[str] = None


class LineContentProvider(BaseModel):
    type: Optional[str] = None
    originalContentUrl: Optional[str] = None
    previewImageUrl: Optional[str] = None


class LineMessageContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: str
    text: Optional[str] = None
    quoteToken: Optional[str] = None
    contentProvider: Optional[LineContentProvider] = None


class LineDeliveryContext(BaseModel):
    isRedelivery: bool = False


class LineEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    mode: Optional[str] = None
    timestamp: Optional[int] = None
    source: Optional[LineSource] = None
    webhookEventId: Optional[str] = None
    deliveryContext: Optional[LineDeliveryContext] = None
    message: Optional[LineMessageContent] = None
    replyToken: Optional[str] = None


class LineWebhookBody(BaseModel):
    destination: Optional[str] = None
    events: list[LineEvent] = Field(default_factory=list)


class LineMessageWorkflowParams(BaseModel):
    """Durable input of one line-message workflow instance."""

    user_id: Optional[str] = None
    message_type: Optional[str] = None
    message_content: Optional[str] = None
    image_url: Optional[str] = None
