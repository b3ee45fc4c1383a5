"""Build engine agents from agents.yaml."""

from pathlib import Path
from typing import Optional

from storypipe.agents.base import Agent, FixAgent, RollbackHook
from storypipe.agents.command import CommandAgent, CommandFixAgent, CommandRollback
from storypipe.agents.testing import TestCommandAgent
from storypipe.lib.agents_config import AgentsConfig
from storypipe.lib.models import PipelinePhase


def build_agents(config: AgentsConfig, root: Path,
                 timeout: Optional[float] = None) -> dict[PipelinePhase, Agent]:
    """Phase -> agent. Test commands win over agent commands for the same phase."""
    agents: dict[PipelinePhase, Agent] = {}
    for phase, template in config.phases.items():
        agents[phase] = CommandAgent(template, root, config.workdir, timeout)
    for phase, template in config.tests.items():
        agents[phase] = TestCommandAgent(template, root, config.workdir, timeout)
    return agents


def build_fix_agent(config: AgentsConfig, root: Path,
                    timeout: Optional[float] = None) -> Optional[FixAgent]:
    if not config.fix:
        return None
    return CommandFixAgent(config.fix, root, config.workdir, timeout)


def build_rollback(config: AgentsConfig, root: Path,
                   timeout: Optional[float] = None) -> Optional[RollbackHook]:
    if not config.rollback:
        return None
    return CommandRollback(config.rollback, root, config.workdir, timeout)
