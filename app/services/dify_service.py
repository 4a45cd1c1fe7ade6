"""Dify API client: blocking chat messages and knowledge base management."""

import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx

from app.config import Settings, settings
from app.logging_config import get_logger
from app.schemas.dify import (
    CreateDatasetRequest,
    CreateDocumentByTextRequest,
    CreateSegmentRequest,
    UpdateDocumentByTextRequest,
)
from app.services.dify_variables import (
    CONTINUATION_VARIABLES,
    INITIAL_CONVERSATION_VARIABLES,
    ConversationVariableContext,
    generate_dify_inputs,
    parse_enabled_variables,
)

logger = get_logger("dify_service")

DEFAULT_DIFY_API_URL = "https://api.dify.ai/v1"
KNOWLEDGE_TIMEOUT_SECONDS = 30.0

MAX_MESSAGE_LENGTH = 10000
TRUNCATION_MARKER = "..."
MAX_CONVERSATION_RETRIES = 1

FALLBACK_AUTH_ERROR = "申し訳ございません。認証エラーが発生しました。"
FALLBACK_PERMISSION_ERROR = "申し訳ございません。アクセス権限がありません。"
FALLBACK_RATE_LIMITED = "申し訳ございません。リクエスト制限に達しました。しばらく時間をおいて再度お試しください。"
FALLBACK_SERVER_ERROR = "申し訳ございません。サーバーエラーが発生しました。"
FALLBACK_UNAVAILABLE = "申し訳ございません。一時的にサービスが利用できません。"
FALLBACK_PARSE_ERROR = "申し訳ございません。応答の解析に失敗しました。"
FALLBACK_EMPTY_ANSWER = "申し訳ございません。回答を生成できませんでした。"
FALLBACK_TIMEOUT = "申し訳ございません。応答に時間がかかりすぎています。もう一度お試しください。"

PREMIUM_FEATURE_REQUIRED = "premium_feature_required"
SEGMENT_CREATE_DISABLED = "セグメントの作成は有料プラン限定機能です"
SEGMENT_DELETE_DISABLED = "セグメントの削除は有料プラン限定機能です"

# Dify error codes meaning "the conversation id you sent is unknown"
CONVERSATION_MISSING_CODES = {"not_found", "conversation_not_exists"}


class DifyConfigError(Exception):
    pass


class DifyErrorKind(str, Enum):
    CONVERSATION_NOT_FOUND = "conversation_not_found"
    AUTH = "auth"
    PERMISSION = "permission"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    UNAVAILABLE = "unavailable"


FALLBACK_ANSWERS = {
    DifyErrorKind.AUTH: FALLBACK_AUTH_ERROR,
    DifyErrorKind.PERMISSION: FALLBACK_PERMISSION_ERROR,
    DifyErrorKind.RATE_LIMITED: FALLBACK_RATE_LIMITED,
    DifyErrorKind.SERVER: FALLBACK_SERVER_ERROR,
    DifyErrorKind.UNAVAILABLE: FALLBACK_UNAVAILABLE,
    # only reached when the retry budget is spent
    DifyErrorKind.CONVERSATION_NOT_FOUND: FALLBACK_UNAVAILABLE,
}


@dataclass(frozen=True)
class DifyClientConfig:
    api_key: Optional[str]
    api_url: Optional[str] = DEFAULT_DIFY_API_URL
    mode: str = "chat"  # chat, knowledge
    timeout_seconds: float = 300.0
    enabled_variables: Optional[tuple[str, ...]] = None
    premium_features_enabled: bool = False


@dataclass
class ChatAnswer:
    answer: str
    conversation_id: Optional[str] = None


def dify_config_from_settings(mode: str = "chat", app_settings: Optional[Settings] = None) -> DifyClientConfig:
    app_settings = app_settings or settings
    if mode == "chat":
        api_key = app_settings.dify_chat_api_key
        timeout_seconds = app_settings.dify_timeout_seconds
    elif mode == "knowledge":
        api_key = app_settings.dify_knowledge_key
        timeout_seconds = KNOWLEDGE_TIMEOUT_SECONDS
    else:
        raise DifyConfigError(f"Invalid Dify client mode: {mode}")

    enabled = parse_enabled_variables(app_settings.dify_enabled_variables)
    return DifyClientConfig(
        api_key=api_key,
        api_url=app_settings.dify_api_endpoint,
        mode=mode,
        timeout_seconds=timeout_seconds,
        enabled_variables=tuple(enabled) if enabled else None,
        premium_features_enabled=app_settings.dify_premium_features_enabled,
    )


def create_dify_client(config: DifyClientConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> "DifyClient":
    if not config.api_key:
        raise DifyConfigError(f"Dify API key is not configured for mode '{config.mode}'")
    if not config.api_url:
        raise DifyConfigError("Dify API URL is not configured")
    return DifyClient(config, transport=transport)


def _is_conversation_missing(body_text: str) -> bool:
    try:
        payload = json.loads(body_text)
    except (TypeError, ValueError):
        return False
    if not isinstance(payload, dict):
        return False
    code = str(payload.get("code") or "").strip().lower()
    return code in CONVERSATION_MISSING_CODES


def classify_chat_error(status_code: int, body_text: str, conversation_id: str) -> DifyErrorKind:
    """Map a non-2xx chat response to an error kind."""
    if status_code == 404 and conversation_id and _is_conversation_missing(body_text):
        return DifyErrorKind.CONVERSATION_NOT_FOUND
    if status_code == 401:
        return DifyErrorKind.AUTH
    if status_code == 403:
        return DifyErrorKind.PERMISSION
    if status_code == 429:
        return DifyErrorKind.RATE_LIMITED
    if status_code >= 500:
        return DifyErrorKind.SERVER
    return DifyErrorKind.UNAVAILABLE


def truncate_message(message: str) -> str:
    if len(message) > MAX_MESSAGE_LENGTH:
        return message[:MAX_MESSAGE_LENGTH] + TRUNCATION_MARKER
    return message


def _validation_error(message: str) -> dict:
    return {"error": "Validation failed", "message": message}


def _pagination_error(page: int, limit: int) -> Optional[dict]:
    if page < 1 or limit < 1 or limit > 100:
        return {
            "error": "Invalid pagination parameters",
            "message": "Page must be >= 1 and limit must be between 1 and 100",
        }
    return None


def _premium_error(message: str) -> dict:
    return {"error": PREMIUM_FEATURE_REQUIRED, "code": "403", "message": message}


def _blank(*values: Optional[str]) -> bool:
    return any(not (value or "").strip() for value in values)


class DifyClient:
    """Stateless client bound to one API key; build it with ``create_dify_client``."""

    def __init__(self, config: DifyClientConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.api_key = config.api_key
        self.api_url = (config.api_url or DEFAULT_DIFY_API_URL).rstrip("/")
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout_seconds, transport=self._transport)

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    # === CHAT ===

    def build_chat_payload(
        self,
        message: str,
        conversation_id: str,
        user_id: str,
        image_url: Optional[str] = None,
    ) -> dict:
        context = ConversationVariableContext(
            conversation_id=conversation_id,
            user_id=user_id,
            feature_image=1 if image_url else 0,
            timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        )
        # explicit configuration wins over the new/continued conversation presets
        if self.config.enabled_variables:
            enabled = list(self.config.enabled_variables)
        elif conversation_id:
            enabled = CONTINUATION_VARIABLES
        else:
            enabled = INITIAL_CONVERSATION_VARIABLES
        payload = {
            "inputs": generate_dify_inputs(context, enabled),
            "query": message,
            "response_mode": "blocking",
            "user": user_id,
            "conversation_id": conversation_id,
        }
        if image_url:
            payload["files"] = [{"type": "image", "transfer_method": "remote_url", "url": image_url}]
        return payload

    async def send(
        self,
        message: str,
        conversation_id: str,
        user_id: str,
        image_url: Optional[str] = None,
    ) -> ChatAnswer:
        """Send one user message and return the answer.

        Never raises: every failure is turned into one of the FALLBACK_* answers
        so the caller can always reply to the user.
        """
        if len(message) > MAX_MESSAGE_LENGTH:
            logger.warning(
                "Message too long, truncating",
                extra={"context": {"user_id": user_id, "length": len(message)}},
            )
            message = truncate_message(message)

        conversation_id = conversation_id or ""
        started = time.monotonic()
        try:
            for attempt in range(MAX_CONVERSATION_RETRIES + 1):
                payload = self.build_chat_payload(message, conversation_id, user_id, image_url)
                async with self._client() as client:
                    response = await client.post(
                        f"{self.api_url}/chat-messages",
                        headers=self._headers(),
                        json=payload,
                    )

                if response.is_success:
                    return self._parse_chat_response(response, user_id)

                kind = classify_chat_error(response.status_code, response.text, conversation_id)
                if kind is DifyErrorKind.CONVERSATION_NOT_FOUND and attempt < MAX_CONVERSATION_RETRIES:
                    logger.warning(
                        "Dify conversation not found, starting a new conversation",
                        extra={"context": {"user_id": user_id, "conversation_id": conversation_id}},
                    )
                    conversation_id = ""
                    continue

                logger.error(
                    f"Dify API error: {response.status_code}",
                    extra={"context": {"user_id": user_id, "kind": kind.value, "body": response.text[:500]}},
                )
                return ChatAnswer(answer=FALLBACK_ANSWERS[kind])
        except httpx.TimeoutException:
            logger.error(
                f"Dify API timeout after {int((time.monotonic() - started) * 1000)}ms",
                extra={"context": {"user_id": user_id}},
            )
            return ChatAnswer(answer=FALLBACK_TIMEOUT)
        except Exception as e:
            logger.error(
                f"Dify chat request failed: {e}",
                exc_info=True,
                extra={"context": {"user_id": user_id, "elapsed_ms": int((time.monotonic() - started) * 1000)}},
            )
            return ChatAnswer(answer=FALLBACK_UNAVAILABLE)

        return ChatAnswer(answer=FALLBACK_UNAVAILABLE)

    def _parse_chat_response(self, response: httpx.Response, user_id: str) -> ChatAnswer:
        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Failed to parse Dify response: {e}", extra={"context": {"user_id": user_id}})
            return ChatAnswer(answer=FALLBACK_PARSE_ERROR)
        if not isinstance(data, dict):
            return ChatAnswer(answer=FALLBACK_PARSE_ERROR)

        answer = data.get("answer")
        if not isinstance(answer, str) or not answer.strip():
            return ChatAnswer(answer=FALLBACK_EMPTY_ANSWER)
        return ChatAnswer(answer=answer, conversation_id=data.get("conversation_id") or None)

    # === KNOWLEDGE ===

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        context: str,
        *,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Call the knowledge API and return a ``{data, error, code, message}`` envelope."""
        url = f"{self.api_url}{endpoint}"
        logger.debug(f"{context}: {method} {url}")
        try:
            async with self._client() as client:
                response = await client.request(method, url, headers=self._headers(), json=json_body, params=params)
        except httpx.HTTPError as e:
            logger.error(f"{context} failed: {e}", extra={"context": {"url": url}})
            return {"error": f"{context} failed: Network or runtime error", "message": str(e)}

        if not response.is_success:
            logger.error(
                f"{context} failed: {response.status_code}",
                extra={"context": {"url": url, "body": response.text[:500]}},
            )
            return {
                "error": f"{context} failed: {response.status_code} {response.reason_phrase}",
                "code": str(response.status_code),
                "message": response.text or "Unknown error occurred",
            }

        if not response.content:
            return {"data": None}
        try:
            raw = response.json()
        except ValueError:
            logger.error(f"{context} failed: invalid JSON response", extra={"context": {"url": url}})
            return {"error": f"{context} failed: Invalid JSON response", "message": "Failed to parse response data"}

        if isinstance(raw, dict) and "data" in raw:
            return raw
        return {"data": raw}

    async def get_knowledge_list(self, page: int = 1, limit: int = 20) -> dict:
        error = _pagination_error(page, limit)
        if error:
            return error
        return await self._make_request(
            "GET", "/datasets", "Get knowledge list", params={"page": page, "limit": limit}
        )

    async def create_dataset(self, request: CreateDatasetRequest) -> dict:
        return await self._make_request(
            "POST", "/datasets", "Create dataset", json_body=request.model_dump(exclude_none=True)
        )

    async def get_dataset(self, dataset_id: str) -> dict:
        if _blank(dataset_id):
            return _validation_error("Dataset ID is required")
        return await self._make_request("GET", f"/datasets/{dataset_id}", f"Get dataset {dataset_id}")

    async def delete_dataset(self, dataset_id: str) -> dict:
        if _blank(dataset_id):
            return _validation_error("Dataset ID is required")
        result = await self._make_request("DELETE", f"/datasets/{dataset_id}", f"Delete dataset {dataset_id}")
        if not result.get("error"):
            result["data"] = {"message": "Dataset deleted successfully"}
        return result

    async def get_documents(self, dataset_id: str, page: int = 1, limit: int = 20) -> dict:
        if _blank(dataset_id):
            return _validation_error("Dataset ID is required")
        error = _pagination_error(page, limit)
        if error:
            return error
        return await self._make_request(
            "GET",
            f"/datasets/{dataset_id}/documents",
            f"Get documents for dataset {dataset_id}",
            params={"page": page, "limit": limit},
        )

    async def create_document_by_text(self, dataset_id: str, request: CreateDocumentByTextRequest) -> dict:
        if _blank(dataset_id):
            return _validation_error("Dataset ID is required")
        result = await self._make_request(
            "POST",
            f"/datasets/{dataset_id}/document/create_by_text",
            f"Create document by text in dataset {dataset_id}",
            json_body=request.model_dump(exclude_none=True),
        )
        data = result.get("data")
        if isinstance(data, dict) and "document" in data:
            result["data"] = data["document"]
        return result

    async def update_document_by_text(
        self, dataset_id: str, document_id: str, request: UpdateDocumentByTextRequest
    ) -> dict:
        if _blank(dataset_id, document_id):
            return _validation_error("Dataset ID and Document ID are required")
        if _blank(request.text):
            return _validation_error("Text content is required")
        return await self._make_request(
            "POST",
            f"/datasets/{dataset_id}/documents/{document_id}/update_by_text",
            f"Update document {document_id} by text in dataset {dataset_id}",
            json_body=request.model_dump(exclude_none=True),
        )

    async def get_document_details(self, dataset_id: str, document_id: str, metadata: str = "all") -> dict:
        if _blank(dataset_id, document_id):
            return _validation_error("Dataset ID and Document ID are required")
        return await self._make_request(
            "GET",
            f"/datasets/{dataset_id}/documents/{document_id}",
            f"Get document {document_id} details in dataset {dataset_id}",
            params={"metadata": metadata},
        )

    async def get_document_embedding_status(self, dataset_id: str, document_id: str) -> dict:
        if _blank(dataset_id, document_id):
            return _validation_error("Dataset ID and Document ID are required")
        return await self._make_request(
            "GET",
            f"/datasets/{dataset_id}/documents/{document_id}/status",
            f"Get document {document_id} embedding status in dataset {dataset_id}",
        )

    async def delete_document(self, dataset_id: str, document_id: str) -> dict:
        if _blank(dataset_id, document_id):
            return _validation_error("Dataset ID and Document ID are required")
        result = await self._make_request(
            "DELETE",
            f"/datasets/{dataset_id}/documents/{document_id}",
            f"Delete document {document_id} from dataset {dataset_id}",
        )
        if not result.get("error"):
            result["data"] = {"message": "Document deleted successfully"}
        return result

    async def get_document_segments(
        self, dataset_id: str, document_id: str, page: int = 1, limit: int = 20
    ) -> dict:
        if _blank(dataset_id, document_id):
            return _validation_error("Dataset ID and Document ID are required")
        error = _pagination_error(page, limit)
        if error:
            return error
        return await self._make_request(
            "GET",
            f"/datasets/{dataset_id}/documents/{document_id}/segments",
            f"Get segments for document {document_id} in dataset {dataset_id}",
            params={"page": page, "limit": limit},
        )

    async def create_document_segments(
        self, dataset_id: str, document_id: str, request: CreateSegmentRequest
    ) -> dict:
        if not self.config.premium_features_enabled:
            logger.warning("Segment creation requested while premium features are disabled")
            return _premium_error(SEGMENT_CREATE_DISABLED)
        if _blank(dataset_id, document_id):
            return _validation_error("Dataset ID and Document ID are required")
        if not request.segments:
            return _validation_error("Segments array is required and cannot be empty")
        for index, segment in enumerate(request.segments, start=1):
            if _blank(segment.content):
                return _validation_error(f"Segment {index} must have non-empty content")

        result = await self._make_request(
            "POST",
            f"/datasets/{dataset_id}/documents/{document_id}/segments",
            f"Create segments for document {document_id} in dataset {dataset_id}",
            json_body=request.model_dump(exclude_none=True),
        )
        if not result.get("error") and not isinstance(result.get("data"), list):
            return {
                "error": f"Create segments for document {document_id} failed: Invalid response format",
                "message": "Expected array of segments in response",
            }
        return result

    async def update_document_segment(
        self, dataset_id: str, document_id: str, segment_id: str, segment: Optional[dict] = None
    ) -> dict:
        if _blank(dataset_id, document_id, segment_id):
            return _validation_error("Dataset ID, Document ID, and Segment ID are required")
        return await self._make_request(
            "POST",
            f"/datasets/{dataset_id}/documents/{document_id}/segments/{segment_id}",
            f"Update segment {segment_id} in document {document_id} in dataset {dataset_id}",
            json_body={"segment": segment} if segment else None,
        )

    async def delete_document_segment(self, dataset_id: str, document_id: str, segment_id: str) -> dict:
        if not self.config.premium_features_enabled:
            logger.warning("Segment deletion requested while premium features are disabled")
            return _premium_error(SEGMENT_DELETE_DISABLED)
        if _blank(dataset_id, document_id, segment_id):
            return _validation_error("Dataset ID, Document ID, and Segment ID are required")
        result = await self._make_request(
            "DELETE",
            f"/datasets/{dataset_id}/documents/{document_id}/segments/{segment_id}",
            f"Delete segment {segment_id} from document {document_id} in dataset {dataset_id}",
        )
        if not result.get("error"):
            result["data"] = {"message": "Segment deleted successfully"}
        return result
