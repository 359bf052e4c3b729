"""
Tests for the retention scheduler
"""

from unittest.mock import patch

from app.database import session_scope
from app.scheduler import purge_expired_files


class TestPurgeExpiredFiles:
    def test_runs_retention_pass(self, session_factory):
        with patch("app.scheduler.session_scope", lambda: session_scope(session_factory)), \
                patch("app.scheduler.purge_deleted_files", return_value=3) as mock_purge:
            assert purge_expired_files() == 3

        assert mock_purge.call_args.args[2] == 30

    def test_errors_are_logged_not_raised(self):
        with patch("app.scheduler.session_scope", side_effect=RuntimeError("db locked")):
            assert purge_expired_files() == 0
