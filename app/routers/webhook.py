from fastapi import APIRouter, BackgroundTasks, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.config import settings
from app.logging_config import get_logger
from app.schemas.line import LineWebhookBody
from app.services.signature_service import verify_signature
from app.services.workflow_service import dispatch_line_events

logger = get_logger("webhook")

router = APIRouter(tags=["webhook"])

SIGNATURE_HEADER = "x-line-signature"


def _declared_length(request: Request) -> int:
    raw = request.headers.get("content-length")
    try:
        return int(raw) if raw else 0
    except ValueError:
        return 0


def _too_large() -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, content={"error": "Request too large"})


@router.post("/webhook")
async def handle_line_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    LINE Messaging API webhook:
    - verify x-line-signature over the raw body
    - acknowledge with {} immediately
    - run one durable workflow per message event after the response is sent
    """
    max_bytes = settings.webhook_max_body_bytes
    if _declared_length(request) > max_bytes:
        logger.warning("Webhook body too large", extra={"context": {"content_length": _declared_length(request)}})
        return _too_large()

    raw_body = await request.body()
    if len(raw_body) > max_bytes:
        return _too_large()

    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.warning("Webhook rejected: missing signature header")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={})

    channel_secret = settings.line_channel_secret
    if not channel_secret:
        logger.error("LINE_CHANNEL_SECRET is not configured")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={})

    if not verify_signature(raw_body, channel_secret, signature):
        logger.warning("Webhook rejected: invalid signature")
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={})

    try:
        body = LineWebhookBody.model_validate_json(raw_body)
    except ValidationError as e:
        logger.warning(f"Webhook rejected: invalid payload: {e}")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid payload"})

    logger.info(
        "Webhook accepted",
        extra={"context": {"destination": body.destination, "events": len(body.events)}},
    )
    if body.events:
        background_tasks.add_task(dispatch_line_events, body.events)
    return {}
