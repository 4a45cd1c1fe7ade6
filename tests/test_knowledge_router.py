from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.dify_service import SEGMENT_CREATE_DISABLED, DifyConfigError

AUTH = ("admin", "s3cret")


@pytest.fixture
def client(mock_env):
    return TestClient(app)


@pytest.fixture
def knowledge_client():
    dify = Mock()
    with patch("app.routers.knowledge.get_knowledge_client", return_value=dify):
        yield dify


class TestKnowledgeAuth:
    def test_requires_credentials(self, client):
        assert client.get("/api/get-knowledge-list").status_code == 401


class TestKnowledgeList:
    def test_passes_pagination(self, client, knowledge_client):
        knowledge_client.get_knowledge_list = AsyncMock(return_value={"data": [], "total": 0})

        response = client.get("/api/get-knowledge-list", params={"page": 2, "limit": 5}, auth=AUTH)

        assert response.status_code == 200
        assert response.json() == {"data": [], "total": 0}
        knowledge_client.get_knowledge_list.assert_awaited_once_with(2, 5)

    def test_missing_key_returns_500(self, client):
        with patch("app.routers.knowledge.get_knowledge_client", side_effect=DifyConfigError("no key")):
            response = client.get("/api/get-knowledge-list", auth=AUTH)

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to get knowledge list", "message": "no key"}


class TestDatasets:
    def test_create_dataset_validation_error(self, client, knowledge_client):
        knowledge_client.create_dataset = AsyncMock()

        response = client.post("/api/datasets", json={"name": ""}, auth=AUTH)

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Validation failed"
        assert body["details"]
        knowledge_client.create_dataset.assert_not_called()

    def test_create_dataset(self, client, knowledge_client):
        knowledge_client.create_dataset = AsyncMock(return_value={"data": {"id": "ds1"}})

        response = client.post("/api/datasets", json={"name": "FAQ", "permission": "only_me"}, auth=AUTH)

        assert response.status_code == 200
        request = knowledge_client.create_dataset.call_args.args[0]
        assert request.name == "FAQ"

    def test_delete_dataset(self, client, knowledge_client):
        knowledge_client.delete_dataset = AsyncMock(return_value={"data": {"message": "Dataset deleted successfully"}})

        response = client.delete("/api/datasets/ds1", auth=AUTH)

        assert response.json()["data"]["message"] == "Dataset deleted successfully"
        knowledge_client.delete_dataset.assert_awaited_once_with("ds1")


class TestDocuments:
    def test_create_document_by_text(self, client, knowledge_client):
        knowledge_client.create_document_by_text = AsyncMock(return_value={"data": {"id": "doc1"}})

        response = client.post("/api/datasets/ds1/documents/text", json={"name": "faq", "text": "body"}, auth=AUTH)

        assert response.status_code == 200
        dataset_id, request = knowledge_client.create_document_by_text.call_args.args
        assert dataset_id == "ds1"
        assert request.indexing_technique == "high_quality"

    def test_create_document_requires_text(self, client, knowledge_client):
        response = client.post("/api/datasets/ds1/documents/text", json={"name": "faq"}, auth=AUTH)
        assert response.status_code == 400

    def test_document_details_default_metadata(self, client, knowledge_client):
        knowledge_client.get_document_details = AsyncMock(return_value={"data": {"id": "doc1"}})

        client.get("/api/datasets/ds1/documents/doc1", auth=AUTH)

        knowledge_client.get_document_details.assert_awaited_once_with("ds1", "doc1", "all")


class TestSegments:
    def test_premium_gate_is_passed_through(self, client, knowledge_client):
        gated = {"error": "premium_feature_required", "code": "403", "message": SEGMENT_CREATE_DISABLED}
        knowledge_client.create_document_segments = AsyncMock(return_value=gated)

        response = client.post(
            "/api/datasets/ds1/documents/doc1/segments",
            json={"segments": [{"content": "c"}]},
            auth=AUTH,
        )

        assert response.status_code == 200
        assert response.json() == gated

    def test_update_segment_forwards_body(self, client, knowledge_client):
        knowledge_client.update_document_segment = AsyncMock(return_value={"data": {"id": "seg1"}})

        client.post(
            "/api/datasets/ds1/documents/doc1/segments/seg1",
            json={"segment": {"content": "new"}},
            auth=AUTH,
        )

        knowledge_client.update_document_segment.assert_awaited_once_with("ds1", "doc1", "seg1", {"content": "new"})
