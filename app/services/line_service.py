from typing import Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("line_service")

LINE_PUSH_URL = "https://api.line.me/v2/bot/message/push"
LINE_MAX_TEXT_LENGTH = 5000
LINE_TRUNCATED_LENGTH = 4900
LINE_TRUNCATION_NOTICE = "...\n（メッセージが長すぎたため省略されました）"


class LinePushError(Exception):
    pass


def truncate_for_line(text: str) -> str:
    """Fit text into one LINE text message (hard limit 5000 characters)."""
    if len(text) > LINE_MAX_TEXT_LENGTH:
        return text[:LINE_TRUNCATED_LENGTH] + LINE_TRUNCATION_NOTICE
    return text


class LineService:
    """Service for pushing messages to LINE users."""

    def __init__(
        self,
        access_token: Optional[str],
        push_url: str = LINE_PUSH_URL,
        timeout_seconds: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.push_url = push_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def push_text(self, user_id: str, text: str) -> None:
        """Push one text message. Raises LinePushError on timeout or non-2xx."""
        if not self.access_token:
            raise LinePushError("LINE channel access token is not configured")

        if len(text) > LINE_MAX_TEXT_LENGTH:
            logger.warning(
                "Message too long for LINE, truncating",
                extra={"context": {"user_id": user_id, "length": len(text)}},
            )
        payload = {"to": user_id, "messages": [{"type": "text", "text": truncate_for_line(text)}]}

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(
                    self.push_url,
                    headers={
                        "Authorization": f"Bearer {self.access_token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.TimeoutException as e:
            logger.error("LINE Push API timeout", extra={"context": {"user_id": user_id}})
            raise LinePushError("LINE Push API timeout") from e
        except httpx.HTTPError as e:
            logger.error(f"LINE Push API request failed: {e}", extra={"context": {"user_id": user_id}})
            raise LinePushError(f"LINE Push API request failed: {e}") from e

        if not response.is_success:
            logger.error(
                f"LINE API error: {response.status_code}",
                extra={"context": {"user_id": user_id, "body": response.text[:500]}},
            )
            raise LinePushError(f"LINE API error: {response.status_code}")

        logger.info("LINE push sent", extra={"context": {"user_id": user_id}})
