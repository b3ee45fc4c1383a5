"""Build/test retry coordinator using the transitions library.

Owns the retry loop of one pipeline run: counts attempts, holds the failure
context and fix tasks, and decides which human actions are legal.

    idle --fail--> awaiting_fix_generation --fixes_ready--> awaiting_retry_approval
    awaiting_retry_approval --auto_fix--> retrying --resolve--> idle
    retrying --fail--> awaiting_fix_generation (or exhausted past max_attempts)

The attempt counter is incremented before `fail` fires, so the first failure
is attempt 1 and AutoFix stays available while attempt <= max_attempts.

Usage:
    coordinator = RetryCoordinator("STR-20260101-AB12", max_attempts=3)
    coordinator.record_failure(RetryReason.TESTS_FAILED, "2 tests failed", ...)
    coordinator.set_fix_tasks(fix_tasks)
    coordinator.apply(RetryAction.AUTO_FIX)
"""

import logging
from typing import Callable, Optional

from transitions import Machine

from storypipe.lib.errors import InvalidRetryAction
from storypipe.lib.models import (
    FixTask,
    PipelinePhase,
    RetryAction,
    RetryInfo,
    RetryReason,
    TestSummary,
    now_iso,
)

logger = logging.getLogger(__name__)


STATES = [
    "idle",
    "awaiting_fix_generation",
    "awaiting_retry_approval",
    "retrying",
    "exhausted",
    "failed",
]

# Order matters for `fail`: the exhausted branch is tried first
TRANSITIONS = [
    {"trigger": "fail", "source": ["idle", "retrying"], "dest": "exhausted", "conditions": "_past_budget"},
    {"trigger": "fail", "source": ["idle", "retrying"], "dest": "awaiting_fix_generation"},

    {"trigger": "fixes_ready", "source": "awaiting_fix_generation", "dest": "awaiting_retry_approval"},
    {"trigger": "fixes_ready", "source": "exhausted", "dest": "exhausted"},

    {"trigger": "auto_fix", "source": "awaiting_retry_approval", "dest": "retrying"},
    {"trigger": "manual_fix", "source": ["awaiting_retry_approval", "exhausted"], "dest": "idle"},
    {"trigger": "skip_tests", "source": "awaiting_retry_approval", "dest": "idle"},
    {"trigger": "abort", "source": ["awaiting_retry_approval", "exhausted"], "dest": "failed"},

    {"trigger": "resolve", "source": "retrying", "dest": "idle"},
]

TRIGGER_FOR_ACTION = {
    RetryAction.AUTO_FIX: "auto_fix",
    RetryAction.MANUAL_FIX: "manual_fix",
    RetryAction.SKIP_TESTS: "skip_tests",
    RetryAction.ABORT: "abort",
}


class RetryCoordinator:
    """State machine for the build/test retry loop of one story."""

    def __init__(self, story_id: str, max_attempts: int = 3,
                 on_transition: Callable[[str, str, str], None] | None = None):
        """
        Args:
            story_id: Story the coordinator belongs to (for logging)
            max_attempts: AutoFix is allowed while attempt <= max_attempts
            on_transition: Optional callback(from_state, to_state, trigger)
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.story_id = story_id
        self.max_attempts = max_attempts
        self.on_transition = on_transition

        self.attempt = 0
        self.reason: Optional[RetryReason] = None
        self.last_error: Optional[str] = None
        self.test_summary: Optional[TestSummary] = None
        self.failing_phase: Optional[PipelinePhase] = None
        self.existing_code: Optional[str] = None
        self.fix_tasks: list[FixTask] = []
        self.last_attempt_at: Optional[str] = None

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial="idle",
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def _past_budget(self, event) -> bool:
        return self.attempt > self.max_attempts

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.info(f"[RETRY] {self.story_id}: {from_state} -> {to_state} ({trigger}, attempt {self.attempt}/{self.max_attempts})")

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    # ------------------------------------------------------------------
    # Operations used by the engine
    # ------------------------------------------------------------------

    def record_failure(self, reason: RetryReason, error: str, phase: PipelinePhase,
                       test_summary: Optional[TestSummary] = None,
                       existing_code: Optional[str] = None) -> str:
        """Count a failure and move to fix generation (or exhausted).

        existing_code must be captured before any rollback runs.
        Returns the new state.
        """
        if not self.can("fail"):
            raise InvalidRetryAction("fail", self.state)
        self.attempt += 1
        self.reason = reason
        self.last_error = error
        self.test_summary = test_summary
        self.failing_phase = phase
        self.existing_code = existing_code
        self.fix_tasks = []
        self.last_attempt_at = now_iso()
        self.fail()
        return self.state

    def set_fix_tasks(self, fix_tasks: list[FixTask]) -> str:
        if not self.can("fixes_ready"):
            raise InvalidRetryAction("fixes_ready", self.state)
        self.fix_tasks = list(fix_tasks)
        self.fixes_ready()
        return self.state

    def allowed_actions(self) -> list[RetryAction]:
        available = set(self.machine.get_triggers(self.state))
        return [action for action, trigger in TRIGGER_FOR_ACTION.items() if trigger in available]

    def apply(self, action: RetryAction) -> str:
        """Apply a human (or automatic) retry decision.

        Raises:
            InvalidRetryAction: action not legal in the current state
        """
        action = RetryAction.parse(action)
        if action not in self.allowed_actions():
            raise InvalidRetryAction(action.label, self.state)
        self.trigger(TRIGGER_FOR_ACTION[action])
        return self.state

    def mark_resolved(self) -> None:
        """The phase that failed has now passed; drop the failure context."""
        if not self.can("resolve"):
            raise InvalidRetryAction("resolve", self.state)
        self.resolve()
        self.reason = None
        self.last_error = None
        self.test_summary = None
        self.failing_phase = None
        self.existing_code = None
        self.fix_tasks = []

    @property
    def exhausted(self) -> bool:
        return self.state == "exhausted"

    @property
    def waiting_for_decision(self) -> bool:
        return self.state in ("awaiting_retry_approval", "exhausted")

    def retry_info(self) -> Optional[RetryInfo]:
        """RetryInfo for the status snapshot, None when no failure is recorded."""
        if self.reason is None:
            return None
        return RetryInfo(
            current_attempt=self.attempt,
            max_attempts=self.max_attempts,
            reason=self.reason,
            fix_tasks=list(self.fix_tasks),
            last_error=self.last_error,
            test_summary=self.test_summary,
            last_attempt_at=self.last_attempt_at,
            allowed_actions=self.allowed_actions(),
        )
