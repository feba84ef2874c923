"""Tests for the Prefect wrappers and desktop notifications."""

from unittest.mock import MagicMock, patch

from ralph import notifications
from ralph.notifications import notify as real_notify
from ralph.workflow import engine
from ralph.workflow.tasks import task_process_story


class TestEngine:
    """The flow and task wrappers only delegate to the controller."""

    def test_run_without_prefect(self):
        controller = MagicMock()
        controller.run.return_value = 0
        assert engine.run(controller, use_prefect=False) == 0
        controller.run.assert_called_once_with()

    def test_story_task_delegates(self):
        controller = MagicMock()
        story = object()
        task_process_story.fn(controller, story)
        controller.process_story.assert_called_once_with(story)

    def test_story_task_never_retried(self):
        assert task_process_story.retries == 0
        assert task_process_story.name == "story"

    def test_flow_name(self):
        assert engine.run_pipeline.name == "ralph_pipeline"


class TestNotifications:
    """Tests for notify-send integration (the autouse stub is bypassed here)."""

    def test_skipped_without_notify_send(self, monkeypatch):
        monkeypatch.setattr(notifications.shutil, "which", lambda name: None)
        with patch("subprocess.run") as run:
            real_notify("Ralph", "hello")
        run.assert_not_called()

    def test_sends(self, monkeypatch):
        monkeypatch.setattr(notifications.shutil, "which", lambda name: "/usr/bin/notify-send")
        with patch("ralph.notifications.subprocess.run") as run:
            run.return_value = MagicMock(returncode=0)
            real_notify("Ralph: 1-1", "Story done", "low")
        cmd = run.call_args[0][0]
        assert cmd == ["notify-send", "--urgency", "low", "--app-name", "Ralph", "Ralph: 1-1", "Story done"]

    def test_invalid_urgency(self, monkeypatch):
        monkeypatch.setattr(notifications.shutil, "which", lambda name: "/usr/bin/notify-send")
        with patch("ralph.notifications.subprocess.run") as run:
            run.return_value = MagicMock(returncode=0)
            real_notify("t", "m", "urgent")
        assert run.call_args[0][0][2] == "normal"

    def test_escalation_message_truncated(self, monkeypatch):
        sent = []
        monkeypatch.setattr(notifications, "notify", lambda *args: sent.append(args))
        notifications.notify_escalated("1-1-user-login", "stuck", "x" * 500)
        title, message, urgency = sent[0]
        assert title == "Ralph: 1-1-user-login"
        assert message == "Needs review (stuck): " + "x" * 200 + "..."
        assert urgency == "critical"
