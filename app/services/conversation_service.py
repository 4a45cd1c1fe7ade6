import re
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.services.message_service import get_latest_message_for_user

logger = get_logger("conversation_service")

CONVERSATION_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_conversation_id(value: Optional[str]) -> bool:
    return bool(value) and CONVERSATION_ID_PATTERN.match(value) is not None


def normalize_conversation_id(value: Optional[str]) -> str:
    """Return the id lowercased if it is a UUID v1-v5, otherwise ""."""
    if is_valid_conversation_id(value):
        return value.lower()
    return ""


def resolve_conversation_id(db: Session, user_id: str) -> str:
    """Conversation id to continue for this user, or "" to start a new one."""
    latest = get_latest_message_for_user(db, user_id)
    if latest is None:
        return ""

    conversation_id = normalize_conversation_id(latest.conversation_id)
    if latest.conversation_id and not conversation_id:
        logger.warning(
            "Stored conversation id is not a UUID, starting a new conversation",
            extra={"context": {"user_id": user_id, "stored": latest.conversation_id}},
        )
    return conversation_id
