"""Tests for storypipe.notifications module."""

import subprocess
from unittest.mock import patch

import pytest

from storypipe.lib.models import PipelinePhase
from storypipe.notifications import (
    MAX_NOTIFICATION_LENGTH,
    PHASE_FAILED,
    PROGRESS,
    Notifier,
    PipelineUpdate,
    notify,
)


class TestNotifier:
    def test_subscribe_and_unsubscribe(self):
        notifier = Notifier()
        seen = []
        unsubscribe = notifier.subscribe(seen.append)

        update = notifier.emit("STR-20260101-AB12", PROGRESS, PipelinePhase.CODING, "halfway", percent=50)
        assert seen == [update]
        assert update.data == {"percent": 50}

        unsubscribe()
        unsubscribe()
        notifier.emit("STR-20260101-AB12", PROGRESS)
        assert len(seen) == 1

    def test_listener_failure_is_logged(self, caplog):
        notifier = Notifier()
        seen = []

        def broken(update):
            raise RuntimeError("socket closed")

        notifier.subscribe(broken)
        notifier.subscribe(seen.append)
        notifier.emit("STR-20260101-AB12", PROGRESS)

        assert len(seen) == 1
        assert "Notification listener failed" in caplog.text

    def test_unknown_update_type(self):
        with pytest.raises(ValueError, match="Unknown update type"):
            Notifier().emit("STR-20260101-AB12", "exploded")

    def test_desktop_only_for_selected_types(self):
        notifier = Notifier(desktop=True)
        with patch("storypipe.notifications.notify") as mock_notify:
            notifier.emit("STR-20260101-AB12", PROGRESS, message="ignored")
            notifier.emit("STR-20260101-AB12", PHASE_FAILED, PipelinePhase.DEBUGGING, "tests broke")
        mock_notify.assert_called_once_with("storypipe: STR-20260101-AB12", "tests broke", "critical")

    def test_update_to_dict(self):
        update = PipelineUpdate("STR-20260101-AB12", PROGRESS, PipelinePhase.REVIEWING, "msg")
        data = update.to_dict()
        assert data["phase"] == 5
        assert data["update_type"] == "progress"


class TestNotify:
    def test_sends_notification(self):
        with patch("storypipe.notifications.shutil.which", return_value="/usr/bin/notify-send"), \
             patch("storypipe.notifications.subprocess.run") as mock_run:
            mock_run.return_value = subprocess.CompletedProcess([], 0, "", "")
            notify("Title", "Body", "low")

        cmd = mock_run.call_args[0][0]
        assert cmd == ["notify-send", "--urgency", "low", "--app-name", "storypipe", "Title", "Body"]

    def test_missing_binary(self):
        with patch("storypipe.notifications.shutil.which", return_value=None), \
             patch("storypipe.notifications.subprocess.run") as mock_run:
            notify("Title", "Body")
        mock_run.assert_not_called()

    def test_truncates_and_fixes_urgency(self, caplog):
        with patch("storypipe.notifications.shutil.which", return_value="/usr/bin/notify-send"), \
             patch("storypipe.notifications.subprocess.run") as mock_run:
            mock_run.return_value = subprocess.CompletedProcess([], 0, "", "")
            notify("Title", "x" * 500, "urgent")

        cmd = mock_run.call_args[0][0]
        assert cmd[2] == "normal"
        assert cmd[-1] == "x" * MAX_NOTIFICATION_LENGTH + "..."
        assert "Invalid urgency" in caplog.text

    def test_timeout_is_logged(self, caplog):
        with patch("storypipe.notifications.shutil.which", return_value="/usr/bin/notify-send"), \
             patch("storypipe.notifications.subprocess.run",
                   side_effect=subprocess.TimeoutExpired(["notify-send"], 5)):
            notify("Title", "Body")
        assert "timed out" in caplog.text
