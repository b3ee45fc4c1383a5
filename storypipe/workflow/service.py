"""
In-process pipeline service.

Runs each story's pipeline on its own worker thread and exposes the command
surface UIs call: start, approve a phase, decide a retry, cancel, and status
reads. Approvals travel over a shared MemoryChannel.
"""

import logging
import threading
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from storypipe.agents.base import Agent, CodebaseProvider, FixAgent, RollbackHook
from storypipe.agents.registry import build_agents, build_fix_agent, build_rollback
from storypipe.lib.agents_config import load_agents_config
from storypipe.lib.config import PipelineConfig, load_pipeline_config
from storypipe.lib.errors import InvalidRetryAction, PipelineAlreadyRunning
from storypipe.lib.models import PhaseState, PipelinePhase, PipelineStatus, RetryAction, RetryInfo
from storypipe.notifications import Notifier
from storypipe.storage.locking import LockTimeout, run_lock
from storypipe.storage.stories import StoryStore
from storypipe.workflow.approval import MemoryChannel
from storypipe.workflow.engine import Collaborators, PipelineEngine

logger = logging.getLogger(__name__)


@dataclass
class _Run:
    engine: PipelineEngine
    thread: threading.Thread


class PipelineService:
    def __init__(self, store: StoryStore, config: Optional[PipelineConfig] = None,
                 agents: Optional[dict[PipelinePhase, Agent]] = None,
                 fix_agent: Optional[FixAgent] = None,
                 rollback: Optional[RollbackHook] = None,
                 codebase_provider: Optional[CodebaseProvider] = None,
                 notifier: Optional[Notifier] = None):
        self.store = store
        self.config = config or PipelineConfig()
        self.channel = MemoryChannel()
        self.collaborators = Collaborators(
            store=store,
            config=self.config,
            channel=self.channel,
            agents=dict(agents or {}),
            fix_agent=fix_agent,
            rollback=rollback,
            codebase_provider=codebase_provider,
            notifier=notifier or Notifier(desktop=self.config.desktop_notifications),
        )
        self._runs: dict[str, _Run] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_root(cls, root: Path, **kwargs) -> "PipelineService":
        """Service configured from <root>/pipeline.env and <root>/agents.yaml."""
        config = load_pipeline_config(root)
        agents_config = load_agents_config(root)
        timeout = config.agent_timeout or None
        return cls(
            StoryStore(root, config.lock_timeout),
            config,
            agents=build_agents(agents_config, root, timeout),
            fix_agent=build_fix_agent(agents_config, root, timeout),
            rollback=build_rollback(agents_config, root, timeout),
            **kwargs,
        )

    @property
    def notifier(self) -> Notifier:
        return self.collaborators.notifier

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start_pipeline(self, story_id: str, auto_approve_all: bool = False) -> PipelineStatus:
        """Start a pipeline on a worker thread and return the initial snapshot.

        Raises:
            StoryNotFound, PipelineAlreadyRunning, StoryAlreadyCompleted
        """
        with self._lock:
            existing = self._runs.get(story_id)
            if existing and existing.thread.is_alive():
                raise PipelineAlreadyRunning(story_id)

            self.store.get(story_id)
            stack = ExitStack()
            try:
                stack.enter_context(run_lock(self.store.root, story_id))
            except LockTimeout:
                raise PipelineAlreadyRunning(story_id) from None

            try:
                engine = PipelineEngine(story_id, self.collaborators, auto_approve_all)
                snapshot = engine.prepare()
            except BaseException:
                stack.close()
                raise

            thread = threading.Thread(
                target=self._run, args=(engine, stack),
                name=f"pipeline-{story_id}", daemon=True,
            )
            self._runs[story_id] = _Run(engine, thread)
            thread.start()

        logger.info(f"[{story_id}] Pipeline started (auto_approve_all={auto_approve_all})")
        return snapshot

    def _run(self, engine: PipelineEngine, stack: ExitStack) -> None:
        try:
            engine.run()
        except Exception:
            logger.exception(f"[{engine.story_id}] Pipeline thread failed")
        finally:
            stack.close()

    def _active(self, story_id: str) -> Optional[_Run]:
        with self._lock:
            run = self._runs.get(story_id)
        if run and run.thread.is_alive():
            return run
        return None

    def approve_phase(self, story_id: str, phase: PipelinePhase, approved: bool = True,
                      comment: Optional[str] = None) -> bool:
        """Approve or reject a phase waiting for approval. False if it isn't waiting."""
        run = self._active(story_id)
        if run is None:
            return False
        phase = PipelinePhase.parse(phase)
        if run.engine.snapshot().phase(phase).state != PhaseState.WAITING_APPROVAL:
            return False
        return self.channel.submit_phase(story_id, phase, approved, comment)

    def approve_retry(self, story_id: str, action: RetryAction, comment: Optional[str] = None) -> bool:
        """Decide a pending retry. False if no retry decision is pending.

        Raises:
            InvalidRetryAction: action not allowed in the coordinator's state
        """
        run = self._active(story_id)
        if run is None:
            return False
        action = RetryAction.parse(action)
        coordinator = run.engine.coordinator
        if not coordinator.waiting_for_decision:
            return False
        if action not in coordinator.allowed_actions():
            raise InvalidRetryAction(action.label, coordinator.state)
        return self.channel.submit_retry(story_id, action, comment)

    def cancel_pipeline(self, story_id: str) -> bool:
        run = self._active(story_id)
        if run is None:
            return False
        run.engine.cancel()
        self.channel.wake()
        logger.info(f"[{story_id}] Cancellation requested")
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_status(self, story_id: str) -> Optional[PipelineStatus]:
        with self._lock:
            run = self._runs.get(story_id)
        if run is not None:
            return run.engine.snapshot()
        if not self.store.exists(story_id):
            return None
        return self.store.load_snapshot(story_id)

    def is_running(self, story_id: str) -> bool:
        return self._active(story_id) is not None

    def running_pipelines(self) -> list[str]:
        with self._lock:
            return sorted(sid for sid, run in self._runs.items() if run.thread.is_alive())

    def get_retry_info(self, story_id: str) -> Optional[RetryInfo]:
        status = self.get_status(story_id)
        return status.retry_info if status else None

    def wait(self, story_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the story's pipeline thread ends. True if it has ended."""
        with self._lock:
            run = self._runs.get(story_id)
        if run is None:
            return True
        run.thread.join(timeout)
        return not run.thread.is_alive()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel every running pipeline and wait for the threads."""
        for story_id in self.running_pipelines():
            self.cancel_pipeline(story_id)
        for story_id in list(self._runs):
            self.wait(story_id, timeout)
