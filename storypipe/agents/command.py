"""
Subprocess agents driven by agents.yaml.

The phase context is written as JSON to the command's stdin. The command
prints a JSON object on stdout:

    {"success": true, "message": "...", "data": {...},
     "test_results": [...], "build_errors": [...]}

The object may be wrapped in markdown fences or in {"result": "<json>"} as
CLI model runners tend to do. A non-zero exit, a timeout or output that is
not JSON is an AgentError.
"""

import json
import logging
import subprocess
from pathlib import Path
from typing import Optional

from storypipe.agents.base import AgentResult, FixContext, PhaseContext
from storypipe.lib.agents_config import build_command
from storypipe.lib.errors import AgentError
from storypipe.lib.models import FixTask, Story

logger = logging.getLogger(__name__)

MAX_LOGGED_OUTPUT = 4000


def extract_json(text: str):
    """Parse JSON from agent stdout, unwrapping fences and {"result": "..."} wrappers."""
    inner = text.strip()
    if "```" in inner:
        start = inner.find("```json")
        if start == -1:
            start = inner.find("```")
        newline = inner.find("\n", start)
        if newline != -1:
            close = inner.find("\n```", newline)
            if close != -1:
                inner = inner[newline + 1:close].strip()

    data = json.loads(inner)
    if isinstance(data, dict) and isinstance(data.get("result"), str) and "success" not in data:
        try:
            return extract_json(data["result"])
        except json.JSONDecodeError:
            return data
    return data


def template_variables(story: Story, phase: str, attempt: int, root: Path, workdir: Optional[str]) -> dict:
    return {
        "story_id": story.id,
        "phase": phase,
        "attempt": str(attempt),
        "root": str(root),
        "workdir": workdir or str(root),
    }


def run_command(cmd: list[str], stdin: Optional[str], timeout: Optional[float],
                phase: str, cwd: Optional[str] = None) -> subprocess.CompletedProcess:
    """Run an agent command, converting launch failures and timeouts into AgentError."""
    logger.debug(f"[{phase}] $ {' '.join(cmd)}")
    try:
        return subprocess.run(
            cmd,
            input=stdin,
            capture_output=True,
            text=True,
            timeout=timeout if timeout and timeout > 0 else None,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired:
        raise AgentError(phase, f"Command timed out after {timeout}s: {cmd[0]}") from None
    except OSError as e:
        raise AgentError(phase, f"Failed to run {cmd[0]}: {e}") from None


class CommandAgent:
    """Runs one phase through an external command."""

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

        result = run_command(cmd, json.dumps(context.to_dict()), self.timeout, phase, self.workdir)
        if result.returncode != 0:
            raise AgentError(phase, f"Exit code {result.returncode}: {result.stderr.strip()[:MAX_LOGGED_OUTPUT]}")

        try:
            payload = extract_json(result.stdout)
        except json.JSONDecodeError as e:
            raise AgentError(phase, f"Agent output is not JSON: {e}") from None
        if not isinstance(payload, dict):
            raise AgentError(phase, "Agent output must be a JSON object")

        agent_result = AgentResult.from_dict(payload)
        agent_result.raw_output = result.stdout
        return agent_result


class CommandFixAgent:
    """Asks an external command for fix tasks; stdout is a JSON list of fix tasks."""

    def __init__(self, template: str, root: Path, workdir: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.template = template
        self.root = Path(root)
        self.workdir = workdir
        self.timeout = timeout

    def generate_fixes(self, context: FixContext) -> list[FixTask]:
        try:
            cmd = build_command(self.template, template_variables(
                context.story, "fix", context.retry_attempt, self.root, self.workdir))
        except ValueError as e:
            raise AgentError("fix", str(e)) from None

        result = run_command(cmd, json.dumps(context.to_dict()), self.timeout, "fix", self.workdir)
        if result.returncode != 0:
            raise AgentError("fix", f"Exit code {result.returncode}: {result.stderr.strip()[:MAX_LOGGED_OUTPUT]}")

        try:
            items = extract_json(result.stdout)
        except json.JSONDecodeError as e:
            raise AgentError("fix", f"Fix output is not JSON: {e}") from None
        if isinstance(items, dict):
            items = items.get("fix_tasks", [])
        if not isinstance(items, list):
            raise AgentError("fix", "Fix output must be a JSON list")

        fixes = []
        for i, item in enumerate(items, 1):
            if not isinstance(item, dict) or not item.get("title"):
                logger.warning(f"Skipping fix task {i}: missing title")
                continue
            item = {**item, "index": i}
            fixes.append(FixTask.from_dict(item))
        return fixes


class CommandRollback:
    """Rollback hook that runs an external command."""

    def __init__(self, template: str, root: Path, workdir: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.template = template
        self.root = Path(root)
        self.workdir = workdir
        self.timeout = timeout

    def __call__(self, story: Story) -> None:
        cmd = build_command(self.template, template_variables(story, "rollback", 0, self.root, self.workdir))
        result = run_command(cmd, None, self.timeout, "rollback", self.workdir)
        if result.returncode != 0:
            raise AgentError("rollback", f"Exit code {result.returncode}: {result.stderr.strip()[:MAX_LOGGED_OUTPUT]}")
