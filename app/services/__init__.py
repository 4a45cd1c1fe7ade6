from app.services.conversation_service import normalize_conversation_id, resolve_conversation_id
from app.services.message_service import (
    get_latest_message_for_user,
    get_message_record,
    insert_message_record,
    list_message_records,
)
from app.services.signature_service import verify_signature

__all__ = [
    "resolve_conversation_id",
    "normalize_conversation_id",
    "insert_message_record",
    "get_latest_message_for_user",
    "get_message_record",
    "list_message_records",
    "verify_signature",
]
