"""Pipeline engine for story execution.

Drives one story through the fixed phase order:

    Analysis -> Planning -> Coding -> Debugging -> Reviewing
      -> Deployment -> UnitTesting -> PullRequest -> Completed

Per phase: cancellation check, skip if no agent (or no codebase for
Analysis), approval gate, agent call under a deadline, then advance. A
business failure in a verification phase goes to the RetryCoordinator, which
may rewind the run to Coding with fix tasks appended. Any other failure
stops the pipeline and marks the story Failed.

The engine has no threads of its own. PipelineService runs it on a worker
thread; `sp run` runs it in the foreground; the Prefect flow wraps it.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from storypipe.agents.base import (
    Agent,
    AgentResult,
    CodebaseProvider,
    FixAgent,
    FixContext,
    PhaseContext,
    RollbackHook,
)
from storypipe.lib.config import PipelineConfig
from storypipe.lib.errors import (
    AgentError,
    InvalidRetryAction,
    PhaseError,
    PipelineCancelled,
    StoryAlreadyCompleted,
)
from storypipe.lib.models import (
    PHASE_ORDER,
    VERIFICATION_PHASES,
    FixTask,
    PhaseState,
    PhaseStatus,
    PipelinePhase,
    PipelineStatus,
    RetryAction,
    RetryReason,
    Story,
    StoryStatus,
    Task,
    TaskStatus,
    now_iso,
)
from storypipe.lib.test_results import format_summary, summarize
from storypipe.notifications import (
    FIX_TASKS_GENERATED,
    PHASE_COMPLETED,
    PHASE_FAILED,
    PHASE_PENDING_APPROVAL,
    PHASE_STARTED,
    PIPELINE_COMPLETED,
    PROGRESS,
    RETRY_REQUIRED,
    RETRY_STARTING,
    TEST_RESULTS,
    Notifier,
)
from storypipe.runner.context import RunContext
from storypipe.runner.phases import call_with_deadline, run_phase
from storypipe.storage.stories import StoryStore
from storypipe.workflow.approval import ApprovalChannel, GateDecision, RetryDecision, decide
from storypipe.workflow.fixes import synthesize_fix_tasks
from storypipe.workflow.indexer import TaskIndexer
from storypipe.workflow.retry import RetryCoordinator

logger = logging.getLogger(__name__)

MAX_RAW_OUTPUT = 20000


class _Next(Enum):
    ADVANCE = "advance"
    REWIND = "rewind"
    STOP = "stop"


@dataclass
class Collaborators:
    """What the engine talks to. Only store, config and channel are required."""
    store: StoryStore
    config: PipelineConfig
    channel: ApprovalChannel
    agents: dict[PipelinePhase, Agent] = field(default_factory=dict)
    fix_agent: Optional[FixAgent] = None
    rollback: Optional[RollbackHook] = None
    codebase_provider: Optional[CodebaseProvider] = None
    notifier: Notifier = field(default_factory=Notifier)


def tasks_from_plan(items: list) -> list[Task]:
    """Build Task records from a planning agent's data["tasks"] list."""
    tasks = []
    for item in items:
        if isinstance(item, str):
            tasks.append(Task(index=0, title=item))
            continue
        target_files = item.get("target_files") or []
        if isinstance(target_files, str):
            target_files = [target_files]
        tasks.append(Task(
            index=0,
            title=item.get("title") or "Untitled task",
            description=item.get("description", ""),
            project_name=item.get("project_name", ""),
            target_files=list(target_files),
            target_method=item.get("target_method"),
            is_modification=bool(item.get("is_modification", False)),
            full_path=item.get("full_path"),
        ))
    return tasks


def classify_failure(phase: PipelinePhase, result: AgentResult) -> RetryReason:
    """Pick a retry reason for a failed verification phase."""
    explicit = result.data.get("reason") if isinstance(result.data, dict) else None
    if explicit is not None:
        try:
            return RetryReason.parse(explicit)
        except ValueError:
            logger.warning(f"Ignoring unknown retry reason from agent: {explicit!r}")
    if result.test_results and any(not t.passed and not t.skipped for t in result.test_results):
        return RetryReason.TESTS_FAILED
    if result.build_errors:
        return RetryReason.BUILD_FAILED
    if phase == PipelinePhase.DEPLOYMENT:
        return RetryReason.INTEGRATION_FAILED
    if phase == PipelinePhase.UNIT_TESTING:
        return RetryReason.TESTS_FAILED
    return RetryReason.BUILD_FAILED


class PipelineEngine:
    """One pipeline run for one story."""

    def __init__(self, story_id: str, collaborators: Collaborators,
                 auto_approve_all: bool = False,
                 cancelled: Optional[threading.Event] = None):
        self.story_id = story_id
        self.c = collaborators
        self.auto_approve_all = auto_approve_all
        self.cancelled = cancelled or threading.Event()

        self.indexer = TaskIndexer(collaborators.store)
        self.coordinator = RetryCoordinator(story_id, collaborators.config.max_retry_attempts)
        self.status = PipelineStatus.initial(story_id)
        self.ctx: Optional[RunContext] = None
        self.story: Optional[Story] = None

        self._status_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self) -> PipelineStatus:
        """Deep copy of the live status, safe to hand to readers."""
        with self._status_lock:
            return copy.deepcopy(self.status)

    def _persist(self) -> None:
        self.c.store.save_snapshot(self.snapshot())

    def _log(self, message: str) -> None:
        logger.info(f"[{self.story_id}] {message}")
        if self.ctx:
            self.ctx.log(message)

    def _emit(self, update_type: str, phase: Optional[PipelinePhase] = None,
              message: str = "", **data) -> None:
        self.c.notifier.emit(self.story_id, update_type, phase, message, **data)

    def cancel(self) -> None:
        self.cancelled.set()

    def _check_cancel(self) -> None:
        if self.cancelled.is_set() or self.c.channel.cancel_requested(self.story_id):
            self.cancelled.set()
            raise PipelineCancelled(self.story_id)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def prepare(self) -> PipelineStatus:
        """Check the story can start, reset markers and publish a running snapshot.

        Raises:
            StoryNotFound, StoryAlreadyCompleted
        """
        store = self.c.store
        self.story = store.get(self.story_id)
        if self.story.status == StoryStatus.COMPLETED:
            raise StoryAlreadyCompleted(self.story_id)

        store.clear_failed(self.story_id, "pipeline started")
        store.set_status(self.story_id, StoryStatus.IN_PROGRESS, "pipeline started")

        with self._status_lock:
            self.status.is_running = True
            self.status.started_at = now_iso()
        self._persist()
        return self.snapshot()

    def run(self) -> PipelineStatus:
        """Run the pipeline to a terminal state and return the final snapshot."""
        if self.story is None:
            self.prepare()

        self.ctx = RunContext.create(self.c.store.root, self.story_id)
        self._log(f"Starting pipeline run {self.ctx.run_id} (auto_approve_all={self.auto_approve_all})")

        outcome = "failed"
        failed_phase = None
        message = None
        try:
            idx = 0
            while idx < len(PHASE_ORDER):
                phase = PHASE_ORDER[idx]
                self._check_cancel()
                next_step = self._execute_phase(phase)
                if next_step == _Next.ADVANCE:
                    idx += 1
                elif next_step == _Next.REWIND:
                    idx = PHASE_ORDER.index(PipelinePhase.CODING)
                else:
                    failed_phase = phase.label
                    message = self.status.phase(phase).message
                    break
            else:
                self._complete()
                outcome = "completed"

        except PipelineCancelled:
            outcome = "cancelled"
            message = "Cancelled by user"
            self._cancel_active_phase()

        except KeyboardInterrupt:
            self.cancelled.set()
            outcome = "cancelled"
            message = "Cancelled by user"
            self._cancel_active_phase()
            raise

        except Exception as e:
            logger.exception(f"[{self.story_id}] Pipeline error")
            message = str(e)
            self._fail_active_phase(f"Pipeline error: {e}")
            raise

        finally:
            with self._status_lock:
                self.status.is_running = False
            self._persist()
            self.ctx.write_result(outcome, failed_phase, message)
            self._log(f"Run finished: {outcome}")

        return self.snapshot()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _set_phase(self, phase: PipelinePhase, **fields) -> PhaseStatus:
        with self._status_lock:
            ps = self.status.phase(phase)
            for key, value in fields.items():
                setattr(ps, key, value)
            return ps

    def _skip(self, phase: PipelinePhase, reason: str) -> _Next:
        now = now_iso()
        self._set_phase(phase, state=PhaseState.SKIPPED, message=reason,
                        started_at=now, completed_at=now)
        self._persist()
        self._log(f"Phase {phase.label} skipped: {reason}")
        self._emit(PROGRESS, phase, f"{phase.label} skipped: {reason}")
        return _Next.ADVANCE

    def _fail_phase(self, phase: PipelinePhase, message: str, result=None) -> _Next:
        self._set_phase(phase, state=PhaseState.FAILED, message=message,
                        completed_at=now_iso(), **({"result": result} if result is not None else {}))
        self.c.store.set_status(self.story_id, StoryStatus.FAILED, f"{phase.label}: {message}")
        self._persist()
        self._log(f"Phase {phase.label} failed: {message}")
        self._emit(PHASE_FAILED, phase, message)
        return _Next.STOP

    def _execute_phase(self, phase: PipelinePhase) -> _Next:
        story = self.story
        if phase == PipelinePhase.ANALYSIS and not story.codebase_id:
            return self._skip(phase, "No codebase linked")
        agent = self.c.agents.get(phase)
        if agent is None:
            return self._skip(phase, "No agent configured")

        if decide(phase, self.auto_approve_all, self.c.config.approval_phases) == GateDecision.WAIT_FOR_APPROVAL:
            self.c.channel.expect_phase(self.story_id, phase)
            self._set_phase(phase, state=PhaseState.WAITING_APPROVAL, started_at=now_iso(),
                            message="Waiting for approval")
            self._persist()
            self._log(f"Phase {phase.label} waiting for approval")
            self._emit(PHASE_PENDING_APPROVAL, phase, f"{phase.label} is waiting for approval")

            decision = self.c.channel.wait_phase(self.story_id, phase, self.cancelled)
            if not decision.approved:
                return self._fail_phase(phase, decision.comment or "Rejected by user")
            self._log(f"Phase {phase.label} approved" + (f": {decision.comment}" if decision.comment else ""))

        attempt = self.coordinator.attempt
        with self._status_lock:
            ps = self.status.phase(phase)
            ps.state = PhaseState.RUNNING
            ps.started_at = now_iso()
            ps.completed_at = None
            ps.message = None
            ps.retry_attempt = attempt
            self.status.current_phase = phase
            if phase == PipelinePhase.CODING:
                self.status.retry_target_phase = None
        self.c.store.set_current_phase(self.story_id, phase)
        self._persist()
        self._emit(PHASE_STARTED, phase, f"{phase.label} started", retry_attempt=attempt)

        tasks = self._tasks_for(phase)
        context = PhaseContext(
            story=self.c.store.get(self.story_id),
            phase=phase,
            tasks=tasks,
            previous_results=self._previous_results(),
            retry_attempt=attempt,
            codebase_context=self._codebase_context(),
        )
        if phase == PipelinePhase.CODING:
            for task in tasks:
                self.c.store.update_task_status(self.story_id, task.index, TaskStatus.IN_PROGRESS)

        try:
            result = run_phase(self.ctx, phase, attempt, lambda: agent.run(context),
                               timeout=self.c.config.agent_timeout)
        except (AgentError, PhaseError) as e:
            self._mark_tasks(phase, tasks, TaskStatus.FAILED)
            return self._fail_phase(phase, e.message)

        self.c.store.save_phase_output(self.story_id, phase, attempt, result.success,
                                       result.to_dict(), result.message)
        payload = self._result_payload(result)
        if result.test_results is not None:
            self._emit(TEST_RESULTS, phase, format_summary(summarize(result.test_results)),
                       test_summary=payload["test_summary"])

        if not result.success:
            if phase in VERIFICATION_PHASES:
                return self._handle_verification_failure(phase, result, payload)
            self._mark_tasks(phase, tasks, TaskStatus.FAILED)
            return self._fail_phase(phase, result.message or f"{phase.label} failed", payload)

        self._after_success(phase, result, tasks)
        self._set_phase(phase, state=PhaseState.COMPLETED, completed_at=now_iso(),
                        message=result.message or "Completed", result=payload)

        if self.coordinator.state == "retrying" and self.coordinator.failing_phase == phase:
            self.coordinator.mark_resolved()
            with self._status_lock:
                self.status.retry_info = None
            self.c.store.clear_failed(self.story_id, f"{phase.label} passed on retry")
            self._log(f"Retry resolved: {phase.label} passed on attempt {attempt}")

        self._persist()
        self._emit(PHASE_COMPLETED, phase, result.message or f"{phase.label} completed")
        return _Next.ADVANCE

    def _tasks_for(self, phase: PipelinePhase) -> list[Task]:
        tasks = self.c.store.tasks(self.story_id)
        if phase == PipelinePhase.CODING:
            return [t for t in tasks if t.status != TaskStatus.COMPLETED]
        return tasks

    def _mark_tasks(self, phase: PipelinePhase, tasks: list[Task], status: TaskStatus) -> None:
        if phase != PipelinePhase.CODING:
            return
        for task in tasks:
            self.c.store.update_task_status(self.story_id, task.index, status)

    def _previous_results(self) -> dict:
        with self._status_lock:
            return {
                ps.phase.label: copy.deepcopy(ps.result)
                for ps in self.status.phases
                if ps.state == PhaseState.COMPLETED and ps.result is not None
            }

    def _codebase_context(self) -> Optional[str]:
        if not self.story.codebase_id or self.c.codebase_provider is None:
            return None
        return self.c.codebase_provider(self.story)

    def _result_payload(self, result: AgentResult) -> dict:
        payload = {"data": result.data, "message": result.message}
        if result.test_results is not None:
            payload["test_summary"] = summarize(result.test_results).to_dict()
        if result.build_errors:
            payload["build_errors"] = result.build_errors
        if result.raw_output:
            payload["raw_output"] = result.raw_output[-MAX_RAW_OUTPUT:]
        return payload

    def _after_success(self, phase: PipelinePhase, result: AgentResult, tasks: list[Task]) -> None:
        if phase == PipelinePhase.PLANNING:
            planned = result.data.get("tasks") if isinstance(result.data, dict) else None
            if planned is not None:
                assigned = self.indexer.assign_initial(self.story_id, tasks_from_plan(planned))
                self._log(f"Planning produced {len(assigned)} task(s)")
            self.c.store.mark_approved(self.story_id, "plan accepted")
        elif phase == PipelinePhase.CODING:
            self._mark_tasks(phase, tasks, TaskStatus.COMPLETED)

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def _existing_code(self) -> Optional[str]:
        """Code produced by the last Coding run, captured before any rollback."""
        with self._status_lock:
            coding = self.status.phase(PipelinePhase.CODING).result
        data = coding.get("data") if isinstance(coding, dict) else None
        files = data.get("files") if isinstance(data, dict) else None
        if not isinstance(files, dict) or not files:
            return None
        return "\n\n".join(f"// {path}\n{content}" for path, content in files.items())

    def _generate_fix_tasks(self, phase: PipelinePhase, reason: RetryReason, error: str,
                            result: AgentResult, existing_code: Optional[str]) -> list[FixTask]:
        summary = self.coordinator.test_summary
        fixes: list[FixTask] = []
        if self.c.fix_agent is not None:
            fix_context = FixContext(
                story=self.story,
                phase=phase,
                reason=reason,
                retry_attempt=self.coordinator.attempt,
                error=error,
                test_summary=summary,
                build_errors=result.build_errors,
                existing_code=existing_code,
                tasks=self.c.store.tasks(self.story_id),
            )
            try:
                fixes = call_with_deadline(lambda: self.c.fix_agent.generate_fixes(fix_context),
                                           self.c.config.agent_timeout, "fix")
            except AgentError as e:
                self._log(f"Fix agent failed, synthesizing fix tasks instead: {e.message}")
                fixes = []
        if not fixes:
            fixes = synthesize_fix_tasks(phase, reason, error, summary, result.build_errors, existing_code)
        for i, fix in enumerate(fixes, 1):
            fix.index = i
            if fix.existing_code is None:
                fix.existing_code = existing_code
        return fixes

    def _handle_verification_failure(self, phase: PipelinePhase, result: AgentResult,
                                     payload: dict) -> _Next:
        summary = summarize(result.test_results) if result.test_results is not None else None
        reason = classify_failure(phase, result)
        error = result.message or (format_summary(summary) if summary else f"{phase.label} failed")
        existing_code = self._existing_code()

        self.coordinator.record_failure(reason, error, phase, summary, existing_code)
        attempt = self.coordinator.attempt
        self._log(f"Phase {phase.label} failed ({reason.label}), attempt {attempt}/{self.coordinator.max_attempts}")

        fixes = self._generate_fix_tasks(phase, reason, error, result, existing_code)
        state = self.coordinator.set_fix_tasks(fixes)
        retry_info = self.coordinator.retry_info()
        if not self.auto_approve_all or state == "exhausted":
            self.c.channel.expect_retry(self.story_id, retry_info)
        self._set_phase(phase, state=PhaseState.WAITING_RETRY_APPROVAL, message=error, result=payload)
        with self._status_lock:
            self.status.retry_info = retry_info
        self._persist()
        self._emit(FIX_TASKS_GENERATED, phase, f"{len(fixes)} fix task(s) proposed",
                   fix_tasks=[f.to_dict() for f in fixes])
        self._emit(RETRY_REQUIRED, phase, f"{phase.label} failed: {reason.label}",
                   current_attempt=attempt, max_attempts=self.coordinator.max_attempts,
                   is_breaking_change=bool(summary and summary.is_breaking_change))

        decision = self._retry_decision(state)
        self._log(f"Retry decision: {decision.action.label}" + (f" ({decision.comment})" if decision.comment else ""))

        if decision.action == RetryAction.AUTO_FIX:
            return self._auto_fix(phase, fixes)

        if decision.action == RetryAction.SKIP_TESTS:
            with self._status_lock:
                self.status.retry_info = None
            self._set_phase(phase, state=PhaseState.COMPLETED, completed_at=now_iso(),
                            message="Tests skipped by user")
            self._persist()
            self._emit(PHASE_COMPLETED, phase, "Tests skipped by user")
            return _Next.ADVANCE

        with self._status_lock:
            self.status.retry_info = self.coordinator.retry_info()
        if decision.action == RetryAction.MANUAL_FIX:
            return self._fail_phase(phase, "Manual fix required")
        return self._fail_phase(phase, decision.comment or "Retry aborted by user")

    def _retry_decision(self, state: str) -> RetryDecision:
        if self.auto_approve_all and state != "exhausted":
            self.coordinator.apply(RetryAction.AUTO_FIX)
            return RetryDecision(RetryAction.AUTO_FIX, "auto-approved")
        while True:
            with self._status_lock:
                retry_info = copy.deepcopy(self.status.retry_info)
            decision = self.c.channel.wait_retry(self.story_id, retry_info, self.cancelled)
            try:
                self.coordinator.apply(decision.action)
                return decision
            except InvalidRetryAction as e:
                self._log(f"Ignoring retry decision: {e}")

    def _auto_fix(self, phase: PipelinePhase, fixes: list[FixTask]) -> _Next:
        attempt = self.coordinator.attempt

        if self.c.rollback is not None:
            try:
                self.c.rollback(self.story)
                self._log("Rollback hook completed")
            except Exception as e:
                logger.exception(f"[{self.story_id}] Rollback failed")
                return self._fail_phase(phase, f"Rollback failed: {e}")

        appended = self.indexer.append_fix(self.story_id, fixes, attempt)

        with self._status_lock:
            start = PHASE_ORDER.index(PipelinePhase.CODING)
            for i in range(start, len(PHASE_ORDER)):
                old = self.status.phases[i]
                if old.state != PhaseState.PENDING:
                    self.status.history.append(copy.deepcopy(old))
                self.status.phases[i] = PhaseStatus(phase=old.phase)
            self.status.history.sort(key=lambda p: (int(p.phase), p.retry_attempt))
            self.status.retry_target_phase = PipelinePhase.CODING
            self.status.retry_info = self.coordinator.retry_info()
        self._persist()
        self._log(f"Retry attempt {attempt}: appended tasks {[t.index for t in appended]}, rewinding to coding")
        self._emit(RETRY_STARTING, PipelinePhase.CODING, f"Retry attempt {attempt} starting",
                   retry_attempt=attempt, task_indices=[t.index for t in appended])
        return _Next.REWIND

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    def _complete(self) -> None:
        self.c.store.set_status(self.story_id, StoryStatus.COMPLETED, "pipeline completed")
        self.c.store.set_current_phase(self.story_id, PipelinePhase.COMPLETED)
        with self._status_lock:
            self.status.current_phase = PipelinePhase.COMPLETED
            self.status.completed_at = now_iso()
            self.status.retry_target_phase = None
        self._persist()
        self._log("Pipeline completed")
        self._emit(PIPELINE_COMPLETED, PipelinePhase.COMPLETED, "Pipeline completed")

    def _active_phase(self) -> Optional[PipelinePhase]:
        active = (PhaseState.RUNNING, PhaseState.WAITING_APPROVAL, PhaseState.WAITING_RETRY_APPROVAL)
        with self._status_lock:
            for ps in self.status.phases:
                if ps.state in active:
                    return ps.phase
        return None

    def _cancel_active_phase(self) -> None:
        phase = self._active_phase()
        if phase is not None:
            self._set_phase(phase, state=PhaseState.FAILED, message="Cancelled by user",
                            completed_at=now_iso())
        self.c.store.set_status(self.story_id, StoryStatus.FAILED, "Cancelled by user")
        self._log("Pipeline cancelled")
        self._emit(PHASE_FAILED, phase, "Cancelled by user")

    def _fail_active_phase(self, message: str) -> None:
        phase = self._active_phase()
        if phase is not None:
            self._set_phase(phase, state=PhaseState.FAILED, message=message, completed_at=now_iso())
        self.c.store.set_status(self.story_id, StoryStatus.FAILED, message)
