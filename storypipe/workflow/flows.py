"""Prefect flow for running a story pipeline as a deployment.

The engine is the same one PipelineService and `sp run` drive; only the
approval channel differs. At an approval point the flow run is suspended
with suspend_flow_run and resumed through the Prefect API/UI with a
PhaseApprovalInput or RetryDecisionInput.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

from prefect import flow, get_run_logger, suspend_flow_run
from prefect.exceptions import MissingContextError
from pydantic import BaseModel

from storypipe.agents.registry import build_agents, build_fix_agent, build_rollback
from storypipe.lib.agents_config import load_agents_config
from storypipe.lib.config import load_pipeline_config
from storypipe.lib.models import PipelinePhase, RetryAction, RetryInfo
from storypipe.notifications import Notifier
from storypipe.storage.locking import run_lock
from storypipe.storage.stories import StoryStore
from storypipe.workflow.approval import PhaseDecision, RetryDecision
from storypipe.workflow.engine import Collaborators, PipelineEngine

logger = logging.getLogger(__name__)

# How long a suspended run waits for a human before Prefect times it out
SUSPEND_TIMEOUT = 86400 * 7


class PhaseApprovalInput(BaseModel):
    """Input schema for a phase approval gate."""
    approved: bool = True
    comment: str = ""


class RetryDecisionInput(BaseModel):
    """Input schema for a retry decision. action is a RetryAction name or number."""
    action: str = "auto_fix"
    comment: str = ""


def _run_logger():
    try:
        return get_run_logger()
    except MissingContextError:
        return logger


class PrefectChannel:
    """Approval channel that suspends the surrounding flow run."""

    def __init__(self, suspend_timeout: int = SUSPEND_TIMEOUT):
        self.suspend_timeout = suspend_timeout

    def wait_phase(self, story_id: str, phase: PipelinePhase,
                   cancelled: threading.Event) -> PhaseDecision:
        log = _run_logger()
        log.info(f"Suspending for approval of {phase.label} ({story_id})")
        human_input: PhaseApprovalInput = suspend_flow_run(
            wait_for_input=PhaseApprovalInput,
            timeout=self.suspend_timeout,
        )
        log.info(f"Resumed: {phase.label} {'approved' if human_input.approved else 'rejected'}")
        return PhaseDecision(human_input.approved, human_input.comment or None)

    def wait_retry(self, story_id: str, retry_info: RetryInfo,
                   cancelled: threading.Event) -> RetryDecision:
        log = _run_logger()
        allowed = ", ".join(a.label for a in retry_info.allowed_actions)
        log.info(f"Suspending for retry decision on {story_id} "
                 f"(attempt {retry_info.current_attempt}/{retry_info.max_attempts}, allowed: {allowed})")
        while True:
            human_input: RetryDecisionInput = suspend_flow_run(
                wait_for_input=RetryDecisionInput,
                timeout=self.suspend_timeout,
            )
            try:
                action = RetryAction.parse(human_input.action)
            except ValueError:
                log.warning(f"Unknown retry action '{human_input.action}', suspending again")
                continue
            if action not in retry_info.allowed_actions:
                log.warning(f"Retry action {action.label} not allowed (allowed: {allowed}), suspending again")
                continue
            return RetryDecision(action, human_input.comment or None)

    def expect_phase(self, story_id: str, phase: PipelinePhase) -> None:
        pass

    def expect_retry(self, story_id: str, retry_info: RetryInfo) -> None:
        pass

    def cancel_requested(self, story_id: str) -> bool:
        return False


@flow(
    name="story-pipeline",
    persist_result=True,
    retries=0,
)
def story_pipeline_flow(
    story_id: str,
    root: str,
    auto_approve_all: bool = False,
    channel: Optional[object] = None,
) -> dict:
    """Run one story's pipeline to a terminal state.

    Args:
        story_id: Story to run
        root: storypipe root directory
        auto_approve_all: Skip approval gates and auto-fix while attempts remain
        channel: Approval channel override (defaults to PrefectChannel)

    Returns:
        The final PipelineStatus as a dict
    """
    log = _run_logger()
    log.info(f"Starting story pipeline flow: {story_id}")

    root_path = Path(root)
    config = load_pipeline_config(root_path)
    agents_config = load_agents_config(root_path)
    timeout = config.agent_timeout or None

    collaborators = Collaborators(
        store=StoryStore(root_path, config.lock_timeout),
        config=config,
        channel=channel or PrefectChannel(),
        agents=build_agents(agents_config, root_path, timeout),
        fix_agent=build_fix_agent(agents_config, root_path, timeout),
        rollback=build_rollback(agents_config, root_path, timeout),
        notifier=Notifier(desktop=config.desktop_notifications),
    )

    with run_lock(root_path, story_id):
        engine = PipelineEngine(story_id, collaborators, auto_approve_all)
        final = engine.run()

    log.info(f"Story pipeline finished: {story_id} at {final.current_phase.label}")
    return final.to_dict()
