"""
Tests for candidate notifications
"""

import json
from unittest.mock import patch

import httpx
import pytest

from app.services.notifications import NotificationService, QueuedNotifier


def _service(settings, handler):
    settings.brevo_api_key = "key-123"
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return NotificationService(settings=settings, client=client)


class TestNotificationService:
    @pytest.mark.asyncio
    async def test_sends_thank_you(self, settings):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(201, json={"messageId": "m1"})

        sent = await _service(settings, handler).send_thank_you("an@example.com", "An <b>", "Python Developer")

        assert sent is True
        body = json.loads(requests[0].content)
        assert requests[0].headers["api-key"] == "key-123"
        assert body["to"] == [{"email": "an@example.com", "name": "An <b>"}]
        assert body["subject"] == "Thank you for applying: Python Developer"
        assert "An &lt;b&gt;" in body["htmlContent"]

    @pytest.mark.asyncio
    async def test_provider_error_reported_not_raised(self, settings):
        service = _service(settings, lambda request: httpx.Response(500))
        assert await service.send_thank_you("an@example.com", None, None) is False

    @pytest.mark.asyncio
    async def test_skipped_without_api_key(self, settings):
        assert await NotificationService(settings=settings).send_thank_you("an@example.com", None, None) is False


class TestQueuedNotifier:
    @pytest.mark.asyncio
    @patch("app.tasks.ingestion.send_thank_you_email.apply_async")
    async def test_queues_on_notifications_queue(self, mock_apply):
        assert await QueuedNotifier().send_thank_you("an@example.com", "An", "Dev") is True
        mock_apply.assert_called_once_with(args=["an@example.com", "An", "Dev"], queue="notifications")
