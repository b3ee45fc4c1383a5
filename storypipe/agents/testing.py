"""
Test command agent.

Runs a test command (pytest, go test, ...) and turns its output into
TestResult records. A non-zero exit is a business failure, not an agent
error: the retry coordinator gets to look at it. Output with no recognizable
tests is reported as a build failure with any compile errors found.
"""

import logging
from pathlib import Path
from typing import Optional

from storypipe.agents.base import AgentResult, PhaseContext
from storypipe.agents.command import template_variables, run_command
from storypipe.lib.agents_config import build_command
from storypipe.lib.errors import AgentError
from storypipe.lib.models import TaskType
from storypipe.lib.test_results import format_summary, parse_build_errors, parse_test_output, summarize

logger = logging.getLogger(__name__)


def new_test_names(context: PhaseContext) -> set[str]:
    """Names of tests this story added, from Coding's data["new_tests"]."""
    coding = context.previous_results.get("coding")
    data = coding.get("data") if isinstance(coding, dict) else None
    names = data.get("new_tests") if isinstance(data, dict) else None
    return set(names or [])


class TestCommandAgent:
    __test__ = False  # not a pytest test class

    def __init__(self, template: str, root: Path, workdir: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.template = template
        self.root = Path(root)
        self.workdir = workdir
        self.timeout = timeout

    def run(self, context: PhaseContext) -> AgentResult:
        phase = context.phase.label
        try:
            cmd = build_command(self.template, template_variables(
                context.story, phase, context.retry_attempt, self.root, self.workdir))
        except ValueError as e:
            raise AgentError(phase, str(e)) from None

        result = run_command(cmd, None, self.timeout, phase, self.workdir)
        output = f"{result.stdout}\n{result.stderr}"
        tests = parse_test_output(result.stdout, result.stderr, new_test_names(context))

        if not tests:
            if result.returncode == 0:
                return AgentResult(success=True, message="No tests found", test_results=[],
                                   raw_output=output)
            build_errors = parse_build_errors(result.stdout, result.stderr)
            tail = result.stderr.strip()[-500:] or result.stdout.strip()[-500:]
            return AgentResult(
                success=False,
                message=f"Build failed (exit {result.returncode}): {tail}" if tail else f"Build failed (exit {result.returncode})",
                build_errors=build_errors,
                raw_output=output,
            )

        summary = summarize(tests)
        success = result.returncode == 0 and summary.failed == 0
        fix_retry = any(t.type == TaskType.FIX for t in context.tasks)
        logger.info(f"[{phase}] {summary.passed}/{summary.total_tests} passed"
                    + (" (after fix tasks)" if fix_retry else ""))
        return AgentResult(
            success=success,
            message=None if success else format_summary(summary),
            data={"passed": summary.passed, "failed": summary.failed},
            test_results=tests,
            raw_output=output,
        )
