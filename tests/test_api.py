"""
Tests for the HTTP surface

Tests cover:
- Inbound email webhook (always 204, secret check, enqueue)
- Screening endpoints and error mapping
- File upload, lookup and soft delete
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from app.api.files import get_ingestion_service
from app.api.screening import get_screening_service
from app.database import session_scope
from app.main import app
from app.services.ingestion import IngestionService
from app.services.screening import ScreeningService
from tests.conftest import DOCX_MIME, RESUME_TEXT, make_docx

WEBHOOK_BODY = {
    "items": [{
        "MessageId": "<abc@mail>",
        "From": {"Address": "an@example.com"},
        "To": [{"Address": "job1@jobs.example.com"}],
        "Attachments": [{"Name": "cv.pdf", "ContentLength": 100, "DownloadToken": "tok"}],
    }]
}


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def screening_service(session_factory, fake_queue, settings):
    service = ScreeningService(session_factory=session_factory, queue=fake_queue, settings=settings)
    app.dependency_overrides[get_screening_service] = lambda: service
    return service


class TestInboundWebhook:
    """The provider must always see a 2xx."""

    @patch("app.api.webhooks.enqueue_inbound_email")
    def test_valid_payload_enqueued(self, mock_enqueue, client, settings):
        with patch("app.api.webhooks.get_settings", return_value=settings):
            response = client.post("/webhooks/inbound-email", json=WEBHOOK_BODY)

        assert response.status_code == 204
        payload = mock_enqueue.call_args.args[0]
        assert payload["items"][0]["MessageId"] == "<abc@mail>"
        assert payload["items"][0]["Attachments"][0]["DownloadToken"] == "tok"

    @patch("app.api.webhooks.enqueue_inbound_email")
    def test_malformed_body(self, mock_enqueue, client, settings):
        with patch("app.api.webhooks.get_settings", return_value=settings):
            response = client.post("/webhooks/inbound-email", content=b"{not json",
                                   headers={"content-type": "application/json"})

        assert response.status_code == 204
        mock_enqueue.assert_not_called()

    @patch("app.api.webhooks.enqueue_inbound_email")
    def test_empty_items(self, mock_enqueue, client, settings):
        with patch("app.api.webhooks.get_settings", return_value=settings):
            response = client.post("/webhooks/inbound-email", json={"items": []})

        assert response.status_code == 204
        mock_enqueue.assert_not_called()

    @patch("app.api.webhooks.enqueue_inbound_email")
    def test_secret_checked(self, mock_enqueue, client, settings):
        settings.inbound_webhook_secret = "s3cret"
        with patch("app.api.webhooks.get_settings", return_value=settings):
            wrong = client.post("/webhooks/inbound-email/nope", json=WEBHOOK_BODY)
            path = client.post("/webhooks/inbound-email/s3cret", json=WEBHOOK_BODY)
            bearer = client.post("/webhooks/inbound-email", json=WEBHOOK_BODY,
                                 headers={"Authorization": "Bearer s3cret"})

        assert [r.status_code for r in (wrong, path, bearer)] == [204, 204, 204]
        assert mock_enqueue.call_count == 2

    @patch("app.api.webhooks.enqueue_inbound_email", side_effect=ConnectionError("redis down"))
    def test_broker_outage_still_acknowledged(self, mock_enqueue, client, settings):
        with patch("app.api.webhooks.get_settings", return_value=settings):
            response = client.post("/webhooks/inbound-email", json=WEBHOOK_BODY)
        assert response.status_code == 204


class TestScreeningEndpoints:
    def test_trigger_and_get(self, client, screening_service, make_application):
        application_id = make_application()

        response = client.post("/screening/trigger", json={"application_id": application_id, "priority": 2})
        fetched = client.get(f"/screening/{application_id}")

        assert response.status_code == 202
        assert response.json()["status"] == "PENDING"
        assert fetched.json()["priority"] == 2

    def test_trigger_without_resume(self, client, screening_service, make_application):
        application_id = make_application(with_resume=False)
        response = client.post("/screening/trigger", json={"application_id": application_id})
        assert response.status_code == 400

    def test_trigger_validation(self, client, screening_service):
        response = client.post("/screening/trigger", json={"application_id": 1, "priority": 11})
        assert response.status_code == 422

    def test_unknown_result(self, client, screening_service):
        assert client.get("/screening/999").status_code == 404
        assert client.post("/screening/999/retry").status_code == 404

    def test_cancel_conflict(self, client, screening_service, make_application):
        application_id = make_application()
        client.post("/screening/trigger", json={"application_id": application_id})

        first = client.post(f"/screening/{application_id}/cancel", json={"reason": "withdrawn"})
        second = client.post(f"/screening/{application_id}/cancel")

        assert first.status_code == 200
        assert first.json()["error_message"] == "Cancelled by user: withdrawn"
        assert second.status_code == 409

    def test_retry_after_cancel(self, client, screening_service, make_application):
        application_id = make_application()
        client.post("/screening/trigger", json={"application_id": application_id})
        client.post(f"/screening/{application_id}/cancel")

        response = client.post(f"/screening/{application_id}/retry")

        assert response.status_code == 202
        assert response.json()["retry_count"] == 1

    def test_bulk_and_stats(self, client, screening_service, make_application):
        ids = [make_application(email="a@example.com"), make_application(email="b@example.com")]

        bulk = client.post("/screening/bulk", json={"application_ids": ids + [999]})
        stats = client.get("/screening/stats")
        listed = client.get("/screening", params={"status": "pending"})

        assert bulk.json()["triggered"] == 2
        assert bulk.json()["failed"] == 1
        assert stats.json()["by_status"]["PENDING"] == 2
        assert stats.json()["queue"]["available"] is False
        assert len(listed.json()) == 2


class TestFileEndpoints:
    @pytest.fixture
    def files_client(self, client, session_factory, storage, settings):
        service = IngestionService(session_factory=session_factory, storage=storage, settings=settings)
        app.dependency_overrides[get_ingestion_service] = lambda: service
        with patch("app.api.files.session_scope", lambda: session_scope(session_factory)):
            yield client

    def test_upload_get_delete(self, files_client):
        response = files_client.post(
            "/files/upload",
            files={"file": ("Nguyen_CV.docx", make_docx(RESUME_TEXT), DOCX_MIME)},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["kind"] == "resume"

        fetched = files_client.get(f"/files/{body['id']}")
        deleted = files_client.delete(f"/files/{body['id']}")

        assert fetched.json()["original_name"] == "Nguyen_CV.docx"
        assert deleted.json()["status"] == "deleted"

    def test_upload_rejected(self, files_client):
        response = files_client.post(
            "/files/upload",
            files={"file": ("run.exe", b"MZ", "application/octet-stream")},
        )
        assert response.status_code == 400

    def test_declared_kind(self, files_client):
        response = files_client.post(
            "/files/upload",
            files={"file": ("scan.jpg", b"\xff\xd8jpeg", "image/jpeg")},
            data={"kind": "certificate", "reference_id": "4"},
        )
        assert response.json()["kind"] == "certificate"
        assert response.json()["reference_id"] == 4

    def test_missing_file(self, files_client):
        assert files_client.get("/files/nope").status_code == 404
        assert files_client.delete("/files/nope").status_code == 404


class TestHealth:
    @patch("app.main.get_embedding_cache")
    def test_reports_redis_up(self, mock_get_cache, client):
        cache = mock_get_cache.return_value
        cache.health_check = AsyncMock(return_value=True)
        cache.close = AsyncMock()

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "redis": True}
        cache.close.assert_awaited_once()

    @patch("app.main.get_embedding_cache")
    def test_redis_down_is_degraded_not_failed(self, mock_get_cache, client):
        cache = mock_get_cache.return_value
        cache.health_check = AsyncMock(return_value=False)
        cache.close = AsyncMock()

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "degraded", "redis": False}
