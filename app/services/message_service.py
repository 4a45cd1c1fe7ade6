from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import LineMessage

logger = get_logger("message_service")


def now_iso() -> str:
    """UTC timestamp in the ``2024-01-01T00:00:00.000Z`` form stored in line_messages."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def insert_message_record(
    db: Session,
    *,
    conversation_id: str,
    user_id: Optional[str],
    message_type: Optional[str],
    message_content: Optional[str],
    image_url: Optional[str],
    dify_response: Optional[str],
) -> LineMessage:
    """Append one immutable message row; created_at and updated_at are equal."""
    timestamp = now_iso()
    record = LineMessage(
        conversation_id=conversation_id or "",
        user_id=user_id,
        message_type=message_type,
        message_content=message_content,
        image_url=image_url,
        dify_response=dify_response,
        created_at=timestamp,
        updated_at=timestamp,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info(
        "Message record saved",
        extra={"context": {"id": record.id, "user_id": user_id, "conversation_id": record.conversation_id}},
    )
    return record


def get_latest_message_for_user(db: Session, user_id: str) -> Optional[LineMessage]:
    return (
        db.query(LineMessage)
        .filter(LineMessage.user_id == user_id)
        .order_by(LineMessage.created_at.desc(), LineMessage.id.desc())
        .first()
    )


def get_message_record(db: Session, message_id: int) -> Optional[LineMessage]:
    return db.query(LineMessage).filter(LineMessage.id == message_id).first()


def list_message_records(
    db: Session,
    *,
    limit: int = 50,
    offset: int = 0,
    conversation_id: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> tuple[list[LineMessage], int]:
    query = db.query(LineMessage)
    if conversation_id:
        query = query.filter(LineMessage.conversation_id == conversation_id)
    if user_id:
        query = query.filter(LineMessage.user_id == user_id)
    if start_date:
        query = query.filter(LineMessage.created_at >= start_date)
    if end_date:
        query = query.filter(LineMessage.created_at <= end_date)

    total = query.count()
    rows = (
        query.order_by(LineMessage.created_at.desc(), LineMessage.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total
