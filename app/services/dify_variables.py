"""Input variables sent to the Dify chat app.

Each variable is a pure function of ``ConversationVariableContext`` addressed
by a ``category.key`` path. ``generate_dify_inputs`` walks the table and builds
the nested ``inputs`` payload, dropping only the variables whose generator fails.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from app.logging_config import get_logger

logger = get_logger("dify_variables")


@dataclass
class ConversationVariableContext:
    conversation_id: str
    user_id: str = ""
    customer_name: str = ""
    phone: str = ""
    reservation_date_and_time: str = ""
    menu_name: str = ""
    feature_image: int = 0
    llm_context: list[str] = field(default_factory=list)
    user_context: list[str] = field(default_factory=list)
    timestamp: Optional[str] = None


VariableGenerator = Callable[[ConversationVariableContext], Any]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


DIFY_CONVERSATION_VARIABLES: dict[str, dict[str, VariableGenerator]] = {
    "conversation": {
        "is_first": lambda ctx: 1 if not (ctx.conversation_id or "").strip() else 0,
        "customer_name": lambda ctx: ctx.customer_name or "",
        "phone": lambda ctx: ctx.phone or "",
        "reservation_date_and_time": lambda ctx: ctx.reservation_date_and_time or "",
        "menu_name": lambda ctx: ctx.menu_name or "",
        "feature_image": lambda ctx: ctx.feature_image or 0,
        "llm_context": lambda ctx: list(ctx.llm_context or []),
        "user_context": lambda ctx: list(ctx.user_context or []),
    },
    "session": {
        "start_time": lambda ctx: ctx.timestamp or _now_iso(),
    },
}

INITIAL_CONVERSATION_VARIABLES = [
    "conversation.is_first",
    "conversation.customer_name",
    "conversation.phone",
    "conversation.reservation_date_and_time",
    "conversation.menu_name",
    "conversation.feature_image",
    "conversation.llm_context",
    "conversation.user_context",
    "session.start_time",
]

CONTINUATION_VARIABLES = [
    "conversation.is_first",
    "conversation.customer_name",
    "conversation.phone",
    "conversation.reservation_date_and_time",
    "conversation.menu_name",
    "conversation.feature_image",
    "conversation.llm_context",
    "conversation.user_context",
]


def parse_enabled_variables(raw: Optional[str]) -> Optional[list[str]]:
    """Parse a comma separated ``category.key`` list; empty means all variables."""
    if not raw:
        return None
    paths = [item.strip() for item in raw.split(",") if item.strip()]
    return paths or None


def generate_dify_inputs(
    context: ConversationVariableContext,
    enabled_variables: Optional[list[str]] = None,
    variables: Optional[dict[str, dict[str, VariableGenerator]]] = None,
) -> dict[str, dict[str, Any]]:
    table = variables if variables is not None else DIFY_CONVERSATION_VARIABLES
    inputs: dict[str, dict[str, Any]] = {}

    for category, generators in table.items():
        for key, generator in generators.items():
            path = f"{category}.{key}"
            if enabled_variables is not None and path not in enabled_variables:
                continue
            bucket = inputs.setdefault(category, {})
            try:
                bucket[key] = generator(context)
            except Exception as e:
                logger.warning(
                    f"Failed to generate Dify variable {path}: {e}",
                    extra={"context": {"variable": path, "conversation_id": context.conversation_id}},
                )

    return inputs
