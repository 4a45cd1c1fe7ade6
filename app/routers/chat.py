from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas.chat import ChatHistoryData, ChatHistoryListResponse, ChatMessage, ChatMessageResponse
from app.services.auth_service import require_admin
from app.services.message_service import get_message_record, list_message_records

router = APIRouter(tags=["chat"], dependencies=[Depends(require_admin)])


@router.get("/chat/messages", response_model=ChatHistoryListResponse)
@router.get("/api/chat/messages", response_model=ChatHistoryListResponse, include_in_schema=False)
def list_chat_messages(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    conversation_id: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    db: Session = Depends(get_db),
):
    rows, total = list_message_records(
        db,
        limit=limit,
        offset=offset,
        conversation_id=conversation_id,
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
    )
    return ChatHistoryListResponse(
        success=True,
        data=ChatHistoryData(
            messages=[ChatMessage.model_validate(row) for row in rows],
            total=total,
            limit=limit,
            offset=offset,
        ),
    )


@router.get("/chat/messages/{message_id}", response_model=ChatMessageResponse)
@router.get("/api/chat/messages/{message_id}", response_model=ChatMessageResponse, include_in_schema=False)
def get_chat_message(message_id: int, db: Session = Depends(get_db)):
    record = get_message_record(db, message_id)
    if record is None:
        return JSONResponse(status_code=404, content={"success": False, "error": "Message not found"})
    return ChatMessageResponse(success=True, data=ChatMessage.model_validate(record))
