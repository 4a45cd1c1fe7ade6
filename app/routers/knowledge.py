"""Admin proxy for the Dify knowledge API (datasets, documents, segments)."""

import json
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from app.logging_config import get_logger
from app.schemas.dify import (
    CreateDatasetRequest,
    CreateDocumentByTextRequest,
    CreateSegmentRequest,
    UpdateDocumentByTextRequest,
)
from app.services.auth_service import require_admin
from app.services.dify_service import DifyClient, create_dify_client, dify_config_from_settings

logger = get_logger("knowledge")

router = APIRouter(prefix="/api", tags=["knowledge"], dependencies=[Depends(require_admin)])


def get_knowledge_client() -> DifyClient:
    return create_dify_client(dify_config_from_settings("knowledge"))


def _validation_failed(exc: ValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation failed",
            "message": "Invalid request data",
            "details": json.loads(exc.json(include_url=False)),
        },
    )


async def _proxy(action: str, call: Callable[[DifyClient], Awaitable[dict]]) -> Any:
    try:
        client = get_knowledge_client()
        return await call(client)
    except Exception as e:
        logger.error(f"{action} failed: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": f"Failed to {action}", "message": str(e)},
        )


def _parse(model: type[BaseModel], payload: Optional[dict]):
    return model.model_validate(payload or {})


@router.get("/get-knowledge-list")
async def get_knowledge_list(page: int = Query(default=1), limit: int = Query(default=20)):
    return await _proxy("get knowledge list", lambda client: client.get_knowledge_list(page, limit))


@router.post("/datasets")
async def create_dataset(payload: Optional[dict] = Body(default=None)):
    try:
        request = _parse(CreateDatasetRequest, payload)
    except ValidationError as e:
        return _validation_failed(e)
    return await _proxy("create dataset", lambda client: client.create_dataset(request))


@router.get("/datasets/{dataset_id}")
async def get_dataset(dataset_id: str):
    return await _proxy("get dataset", lambda client: client.get_dataset(dataset_id))


@router.delete("/datasets/{dataset_id}")
async def delete_dataset(dataset_id: str):
    return await _proxy("delete dataset", lambda client: client.delete_dataset(dataset_id))


@router.get("/datasets/{dataset_id}/documents")
async def get_documents(dataset_id: str, page: int = Query(default=1), limit: int = Query(default=20)):
    return await _proxy("get documents", lambda client: client.get_documents(dataset_id, page, limit))


@router.post("/datasets/{dataset_id}/documents/text")
async def create_document_by_text(dataset_id: str, payload: Optional[dict] = Body(default=None)):
    try:
        request = _parse(CreateDocumentByTextRequest, payload)
    except ValidationError as e:
        return _validation_failed(e)
    return await _proxy(
        "create document from text", lambda client: client.create_document_by_text(dataset_id, request)
    )


@router.put("/datasets/{dataset_id}/documents/{document_id}/text")
async def update_document_by_text(dataset_id: str, document_id: str, payload: Optional[dict] = Body(default=None)):
    try:
        request = _parse(UpdateDocumentByTextRequest, payload)
    except ValidationError as e:
        return _validation_failed(e)
    return await _proxy(
        "update document with text",
        lambda client: client.update_document_by_text(dataset_id, document_id, request),
    )


@router.get("/datasets/{dataset_id}/documents/{document_id}")
async def get_document_details(dataset_id: str, document_id: str, metadata: str = Query(default="all")):
    return await _proxy(
        "get document details",
        lambda client: client.get_document_details(dataset_id, document_id, metadata),
    )


@router.delete("/datasets/{dataset_id}/documents/{document_id}")
async def delete_document(dataset_id: str, document_id: str):
    return await _proxy("delete document", lambda client: client.delete_document(dataset_id, document_id))


@router.get("/datasets/{dataset_id}/documents/{document_id}/status")
async def get_document_embedding_status(dataset_id: str, document_id: str):
    return await _proxy(
        "get document embedding status",
        lambda client: client.get_document_embedding_status(dataset_id, document_id),
    )


@router.get("/datasets/{dataset_id}/documents/{document_id}/segments")
async def get_document_segments(
    dataset_id: str,
    document_id: str,
    page: int = Query(default=1),
    limit: int = Query(default=20),
):
    return await _proxy(
        "get document segments",
        lambda client: client.get_document_segments(dataset_id, document_id, page, limit),
    )


@router.post("/datasets/{dataset_id}/documents/{document_id}/segments")
async def create_document_segments(dataset_id: str, document_id: str, payload: Optional[dict] = Body(default=None)):
    try:
        request = _parse(CreateSegmentRequest, payload)
    except ValidationError as e:
        return _validation_failed(e)
    return await _proxy(
        "create document segments",
        lambda client: client.create_document_segments(dataset_id, document_id, request),
    )


@router.post("/datasets/{dataset_id}/documents/{document_id}/segments/{segment_id}")
async def update_document_segment(
    dataset_id: str,
    document_id: str,
    segment_id: str,
    payload: Optional[dict] = Body(default=None),
):
    segment = (payload or {}).get("segment")
    return await _proxy(
        "update document segment",
        lambda client: client.update_document_segment(dataset_id, document_id, segment_id, segment),
    )


@router.delete("/datasets/{dataset_id}/documents/{document_id}/segments/{segment_id}")
async def delete_document_segment(dataset_id: str, document_id: str, segment_id: str):
    return await _proxy(
        "delete document segment",
        lambda client: client.delete_document_segment(dataset_id, document_id, segment_id),
    )
