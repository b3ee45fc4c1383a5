"""Tests for the sp command line."""

import json
import re

import pytest

from storypipe.cli import main
from storypipe.lib.models import (
    PhaseState,
    PipelinePhase,
    PipelineStatus,
    RetryAction,
    RetryInfo,
    RetryReason,
    StoryStatus,
)
from storypipe.storage.locking import run_lock
from storypipe.storage.stories import StoryStore
from storypipe.workflow.approval import inbox_dir


@pytest.fixture(autouse=True)
def quiet_config(tmp_path):
    (tmp_path / "pipeline.env").write_text("DESKTOP_NOTIFICATIONS=false\nPOLL_INTERVAL=0.05\n")


def sp(tmp_path, *argv):
    return main(["--root", str(tmp_path), *argv])


def create(tmp_path, capsys, title="Add login", *extra):
    assert sp(tmp_path, "new", title, *extra) == 0
    out = capsys.readouterr().out
    return re.search(r"Created story (\S+):", out).group(1)


def inbox_requests(tmp_path, story_id):
    d = inbox_dir(StoryStore(tmp_path).story_dir(story_id))
    return [json.loads(f.read_text()) for f in sorted(d.glob("*.json"))]


def save_waiting_snapshot(tmp_path, story_id, phase, state, retry_info=None):
    status = PipelineStatus.initial(story_id)
    status.is_running = True
    status.current_phase = phase
    status.phase(phase).state = state
    status.retry_info = retry_info
    StoryStore(tmp_path).save_snapshot(status)


class TestNewListShow:
    def test_new(self, tmp_path, capsys):
        story_id = create(tmp_path, capsys, "Add login", "-c", "Users log in", "--codebase", "web")
        story = StoryStore(tmp_path).get(story_id)
        assert story.content == "Users log in"
        assert story.codebase_id == "web"

    def test_new_from_file(self, tmp_path, capsys):
        path = tmp_path / "story.md"
        path.write_text("As a user I want to log in")
        story_id = create(tmp_path, capsys, "From file", "--file", str(path))
        assert StoryStore(tmp_path).get(story_id).content == "As a user I want to log in"

    def test_new_missing_file(self, tmp_path, capsys):
        assert sp(tmp_path, "new", "Title", "--file", str(tmp_path / "nope.md")) == 2
        assert "File not found" in capsys.readouterr().out

    def test_new_blank_title(self, tmp_path, capsys):
        assert sp(tmp_path, "new", "   ") == 2

    def test_list(self, tmp_path, capsys):
        assert sp(tmp_path, "list") == 0
        assert "No stories found" in capsys.readouterr().out

        story_id = create(tmp_path, capsys)
        assert sp(tmp_path, "list") == 0
        out = capsys.readouterr().out
        assert story_id in out
        assert "not_started" in out

        assert sp(tmp_path, "list", "--status", "completed") == 0
        assert story_id not in capsys.readouterr().out

    def test_show(self, tmp_path, capsys):
        story_id = create(tmp_path, capsys, "Add login", "-c", "Body text")
        assert sp(tmp_path, "show", story_id, "--audit") == 0
        out = capsys.readouterr().out
        assert f"Story: {story_id}" in out
        assert "Body text" in out
        assert "run planning first" in out

    def test_show_missing(self, tmp_path, capsys):
        assert sp(tmp_path, "show", "STR-20260101-ZZZZ") == 2


class TestRunAndStatus:
    def test_status_before_run(self, tmp_path, capsys):
        story_id = create(tmp_path, capsys)
        assert sp(tmp_path, "status", story_id) == 0
        assert "No pipeline has run" in capsys.readouterr().out

    def test_run_without_agents(self, tmp_path, capsys):
        story_id = create(tmp_path, capsys)
        assert sp(tmp_path, "run", story_id, "--auto-approve") == 0
        out = capsys.readouterr().out
        assert f"Pipeline completed for {story_id}" in out
        assert StoryStore(tmp_path).status(story_id) == StoryStatus.COMPLETED

        assert sp(tmp_path, "status", story_id) == 0
        out = capsys.readouterr().out
        assert "[-] analysis" in out
        assert "Running:        no" in out

        assert sp(tmp_path, "status", story_id, "--json") == 0
        data = json.loads(capsys.readouterr().out)
        assert data["current_phase"] == int(PipelinePhase.COMPLETED)

        # completed stories need a reset before running again
        assert sp(tmp_path, "run", story_id) == 1
        assert "already completed" in capsys.readouterr().out
        assert sp(tmp_path, "reset", story_id) == 0
        assert StoryStore(tmp_path).status(story_id) == StoryStatus.NOT_STARTED

    def test_run_while_locked(self, tmp_path, capsys):
        story_id = create(tmp_path, capsys)
        with run_lock(tmp_path, story_id):
            assert sp(tmp_path, "run", story_id) == 3
        assert "already running" in capsys.readouterr().out

    def test_run_missing_story(self, tmp_path, capsys):
        assert sp(tmp_path, "run", "STR-20260101-ZZZZ") == 2

    def test_run_warns_for_missing_binary(self, tmp_path, capsys):
        (tmp_path / "agents.yaml").write_text("phases:\n  reviewing: no-such-reviewer-binary\n")
        story_id = create(tmp_path, capsys)
        sp(tmp_path, "run", story_id, "--auto-approve")
        out = capsys.readouterr().out
        assert "WARNING: reviewing command not found on PATH" in out
        assert "Pipeline stopped at reviewing" in out


class TestDecisions:
    def test_approve_without_run(self, tmp_path, capsys):
        story_id = create(tmp_path, capsys)
        assert sp(tmp_path, "approve", story_id) == 1
        assert "No pipeline is running" in capsys.readouterr().out

    def test_approve_missing_story(self, tmp_path, capsys):
        assert sp(tmp_path, "approve", "STR-20260101-ZZZZ") == 2

    def test_approve_writes_inbox(self, tmp_path, capsys):
        story_id = create(tmp_path, capsys)
        save_waiting_snapshot(tmp_path, story_id, PipelinePhase.CODING, PhaseState.WAITING_APPROVAL)

        with run_lock(tmp_path, story_id):
            assert sp(tmp_path, "reject", story_id, "-c", "Too broad") == 0
            assert sp(tmp_path, "approve", story_id, "--phase", "planning") == 1

        requests = inbox_requests(tmp_path, story_id)
        assert [(r["kind"], r["phase"], r["approved"], r["comment"]) for r in requests] == [
            ("phase", "coding", False, "Too broad"),
        ]

    def test_retry(self, tmp_path, capsys):
        story_id = create(tmp_path, capsys)
        info = RetryInfo(current_attempt=4, max_attempts=3, reason=RetryReason.TESTS_FAILED,
                         allowed_actions=[RetryAction.MANUAL_FIX, RetryAction.ABORT])
        save_waiting_snapshot(tmp_path, story_id, PipelinePhase.DEBUGGING,
                              PhaseState.WAITING_RETRY_APPROVAL, info)

        with run_lock(tmp_path, story_id):
            assert sp(tmp_path, "retry", story_id, "auto_fix") == 1
            assert "not allowed" in capsys.readouterr().out
            assert sp(tmp_path, "retry", story_id, "abort", "-c", "stop") == 0

        requests = inbox_requests(tmp_path, story_id)
        assert [(r["kind"], r["action"], r["comment"]) for r in requests] == [("retry", "abort", "stop")]

    def test_retry_invalid_choice(self, tmp_path, capsys):
        story_id = create(tmp_path, capsys)
        with pytest.raises(SystemExit):
            sp(tmp_path, "retry", story_id, "explode")

    def test_cancel(self, tmp_path, capsys):
        story_id = create(tmp_path, capsys)
        assert sp(tmp_path, "cancel", story_id) == 1
        with run_lock(tmp_path, story_id):
            assert sp(tmp_path, "cancel", story_id) == 0
        assert inbox_requests(tmp_path, story_id)[0]["kind"] == "cancel"


class TestResetDelete:
    def test_reset_refused_while_running(self, tmp_path, capsys):
        story_id = create(tmp_path, capsys)
        with run_lock(tmp_path, story_id):
            assert sp(tmp_path, "reset", story_id) == 1

    def test_delete(self, tmp_path, capsys):
        story_id = create(tmp_path, capsys)
        assert sp(tmp_path, "delete", story_id, "--yes") == 0
        assert not StoryStore(tmp_path).exists(story_id)
        assert sp(tmp_path, "delete", story_id, "--yes") == 2

    def test_delete_declined(self, tmp_path, capsys, monkeypatch):
        story_id = create(tmp_path, capsys)
        monkeypatch.setattr("builtins.input", lambda prompt: "n")
        assert sp(tmp_path, "delete", story_id) == 1
        assert StoryStore(tmp_path).exists(story_id)
