"""
Agent command configuration.

Loads <root>/agents.yaml to determine which CLI command runs each phase.
A phase with no command has no agent and the pipeline skips it.

COMMAND TEMPLATES
=================

    phases:
      planning: "planner --story {story_id}"
      coding: "coder --workdir {workdir}"
    tests:
      debugging: "pytest -rA {workdir}"
      unit_testing: "go test -v ./..."
    fix: "fixer --attempt {attempt}"
    rollback: "deploy-tool rollback {story_id}"
    workdir: "/path/to/checkout"

Entries under `phases` are agent commands: the phase context goes in as JSON
on stdin and a JSON result is read from stdout. Entries under `tests` are
test commands: their stdout/stderr is parsed as test runner output. A phase
listed in both uses the test command.

Templates support {story_id}, {phase}, {attempt}, {root} and {workdir}.
"""

import logging
import re
import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from storypipe.lib.models import PipelinePhase

logger = logging.getLogger(__name__)

CONFIG_FILE = "agents.yaml"

TEMPLATE_VARIABLES = ("story_id", "phase", "attempt", "root", "workdir")


@dataclass
class AgentsConfig:
    """Agent configuration from agents.yaml."""
    phases: dict[PipelinePhase, str] = field(default_factory=dict)
    tests: dict[PipelinePhase, str] = field(default_factory=dict)
    fix: Optional[str] = None
    rollback: Optional[str] = None
    workdir: Optional[str] = None


def _phase_map(raw, section: str) -> dict[PipelinePhase, str]:
    result = {}
    if not raw:
        return result
    if not isinstance(raw, dict):
        logger.warning(f"'{section}' in {CONFIG_FILE} must be a mapping, ignored")
        return result
    for name, command in raw.items():
        try:
            phase = PipelinePhase.parse(str(name))
        except ValueError:
            logger.warning(f"Unknown phase '{name}' under '{section}' in {CONFIG_FILE}, ignored")
            continue
        if not command:
            continue
        result[phase] = str(command)
    return result


def load_agents_config(root: Optional[Path]) -> AgentsConfig:
    """Load agents.yaml and return AgentsConfig.

    If root is None, the file doesn't exist or doesn't parse, returns an empty
    config (every phase skipped).
    """
    if root is None:
        return AgentsConfig()

    config_path = Path(root) / CONFIG_FILE
    if not config_path.exists():
        return AgentsConfig()

    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}")
        return AgentsConfig()

    if not isinstance(data, dict):
        logger.warning(f"{config_path} must contain a mapping")
        return AgentsConfig()

    return AgentsConfig(
        phases=_phase_map(data.get("phases"), "phases"),
        tests=_phase_map(data.get("tests"), "tests"),
        fix=data.get("fix") or None,
        rollback=data.get("rollback") or None,
        workdir=data.get("workdir") or None,
    )


def build_command(template: str, context: dict[str, str]) -> list[str]:
    """Substitute {variables} and split into an argv list.

    Raises:
        ValueError: if the template references a variable not in context
    """
    parts = shlex.split(template)
    missing = set()
    cmd = []
    for part in parts:
        for var in re.findall(r'\{(\w+)\}', part):
            if var not in context:
                missing.add(var)
        cmd.append(re.sub(r'\{(\w+)\}', lambda m: str(context.get(m.group(1), m.group(0))), part))
    if missing:
        raise ValueError(f"Unsubstituted variables {sorted(missing)} in command: {template}")
    return cmd


def check_binary_available(template: str) -> bool:
    """Check if the command's binary is on PATH."""
    parts = shlex.split(template)
    return bool(parts) and shutil.which(parts[0]) is not None
