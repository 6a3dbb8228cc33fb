import asyncio
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.main import _is_enabled_outside_tests, _is_env_enabled, app, check_media_archive_readiness, orchestrator
from app.services.errors import ReadinessError


class TestEnvFlags:
    @pytest.mark.parametrize("value", ["0", "false", " Off ", "NO"])
    def test_disabled_values(self, value):
        assert _is_env_enabled(value) is False

    @pytest.mark.parametrize("value", ["1", "true", "yes", "anything"])
    def test_enabled_values(self, value):
        assert _is_env_enabled(value) is True

    def test_default_when_unset(self):
        assert _is_env_enabled(None) is True
        assert _is_env_enabled(None, default=False) is False

    def test_workers_off_under_pytest(self, monkeypatch):
        monkeypatch.setenv("MODERATION_WORKER_ENABLED", "true")

        assert _is_enabled_outside_tests("MODERATION_WORKER_ENABLED") is False


class TestHealth:
    def test_health(self):
        response = TestClient(app).get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestReadinessStartup:
    @patch("app.main.alert_critical")
    @patch("app.main.SessionLocal")
    @patch("app.main._is_enabled_outside_tests", return_value=True)
    def test_missing_columns_alert_and_abort(self, mock_enabled, mock_session, mock_alert):
        db = mock_session.return_value
        with patch.object(orchestrator.guard, "ensure", side_effect=ReadinessError(["archive_message_id"])):
            with pytest.raises(ReadinessError):
                asyncio.run(check_media_archive_readiness())

        mock_alert.assert_called_once()
        assert mock_alert.call_args.args[1]["code"] == "MEDIA_ARCHIVE_SCHEMA_MISMATCH"
        db.close.assert_called_once()

    @patch("app.main.alert_critical")
    @patch("app.main.SessionLocal")
    @patch("app.main._is_enabled_outside_tests", return_value=True)
    def test_ready_schema_starts_quietly(self, mock_enabled, mock_session, mock_alert):
        with patch.object(orchestrator.guard, "ensure") as mock_ensure:
            asyncio.run(check_media_archive_readiness())

        mock_ensure.assert_called_once_with(mock_session.return_value, "startup")
        mock_alert.assert_not_called()
