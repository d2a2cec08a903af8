"""
HTTP-level tests for the Synapse API using FastAPI's TestClient.
"""

import time
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from app import create_app
from config import Settings
from services.blob_store import BlobStore
from services.voice_service import TranscriptionService


@pytest.fixture
def blob_store():
    store = Mock(spec=BlobStore)
    store.configured = False
    store.close = AsyncMock()
    return store


@pytest.fixture
def transcriber():
    service = Mock(spec=TranscriptionService)
    service.transcribe = AsyncMock(return_value="buy milk")
    service.close = AsyncMock()
    return service


def build_client(tmp_path, classifier, blob_store, transcriber, **settings_overrides):
    settings = Settings(db_path=tmp_path / "items.db", **settings_overrides)
    app = create_app(
        settings,
        classifier=classifier,
        blob_store=blob_store,
        transcriber=transcriber,
    )
    return TestClient(app)


@pytest.fixture
def client(tmp_path, classifier, blob_store, transcriber):
    with build_client(tmp_path, classifier, blob_store, transcriber) as test_client:
        yield test_client


def wait_for_job(client, job_id, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = client.get("/api/jobs", params={"id": job_id}).json()
        if job["status"] in ("completed", "failed"):
            return job
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


class TestHealth:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"
        assert data["itemCount"] == 0
        assert data["queue"]["total"] == 0
        assert "timestamp" in data


class TestJobsEndpoints:

    def test_submit_and_poll(self, client, classifier):
        classifier.classify_content.return_value = {"contentType": "todo", "title": "Buy milk"}

        response = client.post("/api/jobs", json={"type": "classify", "payload": {"content": "Buy milk"}})

        assert response.status_code == 200
        job = wait_for_job(client, response.json()["jobId"])
        assert job["status"] == "completed"
        assert job["result"]["contentType"] == "todo"
        assert job["attempts"] == 1

    def test_data_alias_for_payload(self, client, classifier):
        response = client.post("/api/jobs", json={"type": "classify", "data": {"content": "hi"}})
        wait_for_job(client, response.json()["jobId"])
        classifier.classify_content.assert_awaited_with("hi", None, None)

    def test_unknown_type_rejected(self, client):
        response = client.post("/api/jobs", json={"type": "transcode", "payload": {}})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Unknown job type: transcode"
        assert body["details"]["supported"] == ["classify", "image_upload"]

    def test_missing_type(self, client):
        assert client.post("/api/jobs", json={"payload": {}}).status_code == 422

    def test_unknown_job(self, client):
        response = client.get("/api/jobs", params={"id": "123-abc"})
        assert response.status_code == 404
        assert response.json()["category"] == "not_found"

    def test_stats(self, client):
        stats = client.get("/api/jobs").json()
        assert stats["maxConcurrency"] >= 1
        assert stats["currentProcessing"] == 0


class TestCaptureEndpoints:

    def test_save_list_delete(self, client, classifier):
        classifier.classify_content.return_value = {
            "contentType": "todo", "title": "Buy milk", "tags": ["errand"], "keywords": ["milk"],
        }

        saved = client.post("/api/save", json={"content": "Buy milk"})
        assert saved.status_code == 200
        item = saved.json()["item"]
        assert item["type"] == "todo"
        assert item["status"] == "ready"

        listed = client.get("/api/save").json()["items"]
        assert [i["id"] for i in listed] == [item["id"]]
        assert client.get("/api/save", params={"type": "article"}).json()["items"] == []

        assert client.delete(f"/api/save/{item['id']}").json() == {"success": True, "id": item["id"]}
        assert client.delete(f"/api/save/{item['id']}").status_code == 404

    def test_async_save(self, client):
        response = client.post("/api/save", json={"url": "https://example.com", "async": True})
        data = response.json()
        assert data["async"] is True
        assert data["item"]["metadata"]["title"] == "Processing..."
        assert "classify" in data["jobs"]

    def test_save_requires_content(self, client):
        response = client.post("/api/save", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "Content, URL, or image is required"

    def test_classify(self, client, classifier):
        classifier.classify_content.return_value = {"contentType": "quote", "title": "Stay hungry"}
        response = client.post("/api/classify", json={"content": "Stay hungry, stay foolish"})
        assert response.status_code == 200
        assert response.json()["classification"]["contentType"] == "quote"

    def test_voice(self, client, transcriber):
        response = client.post(
            "/api/voice",
            files={"audio": ("note.webm", b"\x1a\x45\xdf\xa3", "audio/webm")},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["transcript"] == "buy milk"
        assert data["analysis"]["summary"] == "Shopping list"
        assert "item" not in data
        transcriber.transcribe.assert_awaited_once_with(b"\x1a\x45\xdf\xa3", "note.webm", "audio/webm")

    def test_voice_save(self, client):
        response = client.post(
            "/api/voice",
            files={"audio": ("note.webm", b"\x1a\x45", "audio/webm")},
            data={"save": "true"},
        )
        assert response.json()["item"]["tags"] == ["voice"]
        assert client.get("/api/health").json()["itemCount"] == 1


class TestSearchEndpoint:

    def test_search_supplied_items(self, client):
        items = [
            {"id": "1", "type": "product", "metadata": {"title": "Black shoes", "price": "$120"}},
            {"id": "2", "type": "product", "metadata": {"title": "Red shoes", "price": "$400"}},
        ]
        response = client.post(
            "/api/search", json={"query": "shoes under $300", "items": items, "useAI": False}
        )
        assert response.status_code == 200
        data = response.json()
        assert [i["id"] for i in data["results"]] == ["1"]
        assert data["stats"]["filtered"] == 1

    def test_search_requires_query(self, client):
        response = client.post("/api/search", json={"query": ""})
        assert response.status_code == 400


class TestCaptureAuth:

    @pytest.fixture
    def secured(self, tmp_path, classifier, blob_store, transcriber):
        with build_client(tmp_path, classifier, blob_store, transcriber,
                          capture_api_keys="key-one,key-two") as test_client:
            yield test_client

    def test_missing_header(self, secured):
        response = secured.post("/api/save", json={"content": "x"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Missing or invalid Authorization header"

    def test_invalid_key(self, secured):
        response = secured.get("/api/save", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"

    def test_valid_key(self, secured):
        response = secured.get("/api/save", headers={"Authorization": "Bearer key-two"})
        assert response.status_code == 200

    def test_open_routes_need_no_key(self, secured):
        assert secured.get("/api/health").status_code == 200
        assert secured.get("/api/jobs").status_code == 200
