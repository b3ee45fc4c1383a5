"""Tests for storypipe.runner modules."""

import json
import time

import pytest

from storypipe.lib.errors import AgentError, PhaseError
from storypipe.lib.models import PipelinePhase
from storypipe.runner.context import RunContext
from storypipe.runner.phases import call_with_deadline, run_phase


class Outcome:
    def __init__(self, success, message=None):
        self.success = success
        self.message = message


class TestRunContext:
    def test_create_and_log(self, tmp_path):
        ctx = RunContext.create(tmp_path, "STR-20260101-AB12")
        assert ctx.run_dir.parent == tmp_path / "runs"
        assert ctx.run_id.endswith("_STR-20260101-AB12")

        ctx.log("hello")
        assert "hello" in (ctx.run_dir / "run.log").read_text()

    def test_write_result(self, tmp_path):
        ctx = RunContext.create(tmp_path, "STR-20260101-AB12")
        ctx.record_phase("debugging", 1, "failed", 0.5, "1 test failed")
        ctx.write_result("failed", "debugging", "Manual fix required")

        data = json.loads((ctx.run_dir / "result.json").read_text())
        assert data["status"] == "failed"
        assert data["failed_phase"] == "debugging"
        assert data["phases"][0]["retry_attempt"] == 1


class TestCallWithDeadline:
    def test_no_deadline(self):
        assert call_with_deadline(lambda: 42, 0, "coding") == 42

    def test_within_deadline(self):
        assert call_with_deadline(lambda: "ok", 5, "coding") == "ok"

    def test_timeout(self):
        with pytest.raises(AgentError, match="timed out after 0.1s") as exc_info:
            call_with_deadline(lambda: time.sleep(1), 0.1, "coding")
        assert exc_info.value.phase == "coding"


class TestRunPhase:
    def test_records_outcome(self, tmp_path):
        ctx = RunContext.create(tmp_path, "STR-20260101-AB12")
        result = run_phase(ctx, PipelinePhase.REVIEWING, 0, lambda: Outcome(False, "nits"))

        assert result.message == "nits"
        assert ctx.phases[0]["phase"] == "reviewing"
        assert ctx.phases[0]["status"] == "failed"
        assert ctx.phases[0]["notes"] == "nits"

    def test_agent_error_passes_through(self, tmp_path):
        ctx = RunContext.create(tmp_path, "STR-20260101-AB12")

        def fail():
            raise AgentError("coding", "model down")

        with pytest.raises(AgentError):
            run_phase(ctx, PipelinePhase.CODING, 0, fail)
        assert ctx.phases[0]["status"] == "error"

    def test_other_exceptions_wrapped(self, tmp_path):
        ctx = RunContext.create(tmp_path, "STR-20260101-AB12")

        def fail():
            raise KeyError("files")

        with pytest.raises(PhaseError) as exc_info:
            run_phase(ctx, PipelinePhase.CODING, 2, fail)
        assert exc_info.value.phase == "coding"
        assert ctx.phases[0]["retry_attempt"] == 2
