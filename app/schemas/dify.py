from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class RerankingModel(BaseModel):
    reranking_provider_name: str
    reranking_model_name: str


class RetrievalModel(BaseModel):
    search_method: Literal["hybrid_search", "semantic_search", "full_text_search"]
    reranking_enable: bool
    reranking_model: Optional[RerankingModel] = None
    top_k: int = Field(ge=1, le=100)
    score_threshold_enabled: bool
    score_threshold: Optional[float] = Field(default=None, ge=0, le=1)


class CreateDatasetRequest(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    permission: Literal["only_me", "all_team_members", "partial_members"] = "only_me"
    indexing_technique: Optional[Literal["high_quality", "economy"]] = None
    embedding_model: Optional[str] = None
    embedding_model_provider: Optional[str] = None
    retrieval_model: Optional[RetrievalModel] = None


class CreateDocumentByTextRequest(BaseModel):
    name: str = Field(min_length=1)
    text: str = Field(min_length=1)
    indexing_technique: Literal["high_quality", "economy"] = "high_quality"
    process_rule: dict[str, Any] = Field(default_factory=lambda: {"mode": "automatic"})


class UpdateDocumentByTextRequest(BaseModel):
    name: Optional[str] = None
    text: Optional[str] = None
    process_rule: Optional[dict[str, Any]] = None


class SegmentInput(BaseModel):
    content: str
    answer: Optional[str] = None
    keywords: Optional[list[str]] = None


class CreateSegmentRequest(BaseModel):
    segments: list[SegmentInput]

