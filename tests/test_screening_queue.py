"""
Tests for Celery dispatch of screening work
"""

from unittest.mock import MagicMock, patch

import pytest

from app.services.screening_queue import (
    SCREENING_QUEUE,
    SIMILARITY_QUEUE,
    ScreeningQueue,
    retry_countdown,
    screening_task_id,
)


class TestTaskIds:
    def test_deterministic_per_attempt(self):
        assert screening_task_id(42) == "screening-42-0"
        assert screening_task_id(42, 3) == "screening-42-3"

    def test_countdown_doubles_and_caps(self):
        assert retry_countdown(0) == 2
        assert retry_countdown(1) == 4
        assert retry_countdown(3) == 16
        assert retry_countdown(20) == 300


class TestEnqueue:
    @patch("app.tasks.screening.process_screening.apply_async")
    def test_enqueue(self, mock_apply):
        task_id = ScreeningQueue(app=MagicMock()).enqueue(7, priority=2, attempt=1)

        assert task_id == "screening-7-1"
        mock_apply.assert_called_once_with(
            args=[7], task_id="screening-7-1", queue=SCREENING_QUEUE, priority=2
        )

    @pytest.mark.parametrize("priority,broker_priority", [(10, 9), (0, 0), (-3, 0)])
    @patch("app.tasks.screening.process_screening.apply_async")
    def test_priority_clamped_to_broker_steps(self, mock_apply, priority, broker_priority):
        ScreeningQueue(app=MagicMock()).enqueue(7, priority=priority)
        assert mock_apply.call_args.kwargs["priority"] == broker_priority

    @patch("app.tasks.screening.warm_job_embedding.apply_async")
    def test_job_embedding_goes_to_similarity_queue(self, mock_apply):
        mock_apply.return_value.id = "abc"

        assert ScreeningQueue(app=MagicMock()).enqueue_job_embedding(3) == "abc"
        assert mock_apply.call_args.kwargs["queue"] == SIMILARITY_QUEUE


class TestCancelAndStats:
    def test_cancel_revokes(self):
        app = MagicMock()
        assert ScreeningQueue(app=app).cancel("screening-1-0") is True
        app.control.revoke.assert_called_once_with("screening-1-0")

    def test_cancel_without_task_id(self):
        app = MagicMock()
        assert ScreeningQueue(app=app).cancel(None) is False
        app.control.revoke.assert_not_called()

    def test_cancel_broker_error(self):
        app = MagicMock()
        app.control.revoke.side_effect = ConnectionError("no broker")
        assert ScreeningQueue(app=app).cancel("screening-1-0") is False

    def test_queue_stats(self):
        app = MagicMock()
        inspector = app.control.inspect.return_value
        inspector.active.return_value = {"w1": [{"id": "a"}]}
        inspector.reserved.return_value = {"w2": [{"id": "b"}, {"id": "c"}]}
        inspector.scheduled.return_value = None

        stats = ScreeningQueue(app=app).get_queue_stats()

        assert stats == {"available": True, "workers": ["w1", "w2"], "active": 1, "reserved": 2, "scheduled": 0}

    def test_queue_stats_without_broker(self):
        app = MagicMock()
        app.control.inspect.side_effect = OSError("connection refused")

        stats = ScreeningQueue(app=app).get_queue_stats()

        assert stats["available"] is False
        assert "connection refused" in stats["error"]
