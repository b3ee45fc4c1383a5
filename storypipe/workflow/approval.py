"""
Human approval gate and approval channels.

decide() says whether a phase may run straight away. When it may not, the
engine parks the phase in WaitingApproval and blocks on an approval channel
until a decision arrives or the run is cancelled.

Channels:
- MemoryChannel: in-process, used by PipelineService (threads share it)
- InboxChannel: file drop box under stories/<id>/inbox/, written by
  `sp approve/reject/retry/cancel` and polled by `sp run`
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Protocol

from storypipe.lib.constants import INBOX_DIR
from storypipe.lib.errors import PipelineCancelled
from storypipe.lib.models import PipelinePhase, RetryAction, RetryInfo, now_iso

logger = logging.getLogger(__name__)


class GateDecision(Enum):
    PROCEED = "proceed"
    WAIT_FOR_APPROVAL = "wait_for_approval"


def decide(phase: PipelinePhase, auto_approve_all: bool,
           approval_phases: Iterable[PipelinePhase]) -> GateDecision:
    """Gate a phase. Pure."""
    if auto_approve_all:
        return GateDecision.PROCEED
    if phase in set(approval_phases):
        return GateDecision.WAIT_FOR_APPROVAL
    return GateDecision.PROCEED


@dataclass
class PhaseDecision:
    approved: bool
    comment: Optional[str] = None


@dataclass
class RetryDecision:
    action: RetryAction
    comment: Optional[str] = None


class ApprovalChannel(Protocol):
    """Where the engine waits for human decisions."""

    def wait_phase(self, story_id: str, phase: PipelinePhase,
                   cancelled: threading.Event) -> PhaseDecision: ...

    def wait_retry(self, story_id: str, retry_info: RetryInfo,
                   cancelled: threading.Event) -> RetryDecision: ...

    def cancel_requested(self, story_id: str) -> bool: ...

    def expect_phase(self, story_id: str, phase: PipelinePhase) -> None: ...

    def expect_retry(self, story_id: str, retry_info: RetryInfo) -> None: ...


class MemoryChannel:
    """In-process channel backed by a threading.Condition.

    submit_* only succeed once the engine expects that kind of decision, so a
    stray approval can't pre-approve a later phase. The engine registers the
    expectation before it publishes the waiting state; a decision submitted
    between then and the actual wait is kept.
    """

    WAKE_INTERVAL = 0.1

    def __init__(self):
        self._cond = threading.Condition()
        # story_id -> ("phase", PipelinePhase) or ("retry", RetryInfo)
        self._waiting: dict[str, tuple] = {}
        self._decisions: dict[str, object] = {}

    @staticmethod
    def _same_wait(current: Optional[tuple], waiting: tuple) -> bool:
        if current is None or current[0] != waiting[0]:
            return False
        return waiting[0] == "retry" or current[1] == waiting[1]

    def _expect(self, story_id: str, waiting: tuple) -> None:
        # caller holds self._cond
        if not self._same_wait(self._waiting.get(story_id), waiting):
            self._decisions.pop(story_id, None)
        self._waiting[story_id] = waiting

    def expect_phase(self, story_id: str, phase: PipelinePhase) -> None:
        """Start accepting a decision for phase before the engine blocks on it."""
        with self._cond:
            self._expect(story_id, ("phase", phase))

    def expect_retry(self, story_id: str, retry_info: RetryInfo) -> None:
        with self._cond:
            self._expect(story_id, ("retry", retry_info))

    def _wait(self, story_id: str, waiting: tuple, cancelled: threading.Event):
        with self._cond:
            self._expect(story_id, waiting)
            try:
                while story_id not in self._decisions:
                    if cancelled.is_set():
                        raise PipelineCancelled(story_id)
                    self._cond.wait(self.WAKE_INTERVAL)
                return self._decisions.pop(story_id)
            finally:
                self._waiting.pop(story_id, None)

    def wait_phase(self, story_id, phase, cancelled) -> PhaseDecision:
        return self._wait(story_id, ("phase", phase), cancelled)

    def wait_retry(self, story_id, retry_info, cancelled) -> RetryDecision:
        return self._wait(story_id, ("retry", retry_info), cancelled)

    def cancel_requested(self, story_id: str) -> bool:
        return False

    def waiting_for(self, story_id: str) -> Optional[tuple]:
        with self._cond:
            return self._waiting.get(story_id)

    def submit_phase(self, story_id: str, phase: PipelinePhase,
                     approved: bool, comment: Optional[str] = None) -> bool:
        with self._cond:
            waiting = self._waiting.get(story_id)
            if waiting is None or waiting[0] != "phase" or waiting[1] != phase:
                return False
            self._decisions[story_id] = PhaseDecision(approved, comment)
            self._cond.notify_all()
            return True

    def submit_retry(self, story_id: str, action: RetryAction,
                     comment: Optional[str] = None) -> bool:
        """Deliver a retry decision. Legality of the action is checked by the caller."""
        with self._cond:
            waiting = self._waiting.get(story_id)
            if waiting is None or waiting[0] != "retry":
                return False
            self._decisions[story_id] = RetryDecision(action, comment)
            self._cond.notify_all()
            return True

    def wake(self) -> None:
        """Wake waiters so they re-check cancellation."""
        with self._cond:
            self._cond.notify_all()


# ---------------------------------------------------------------------------
# File inbox
# ---------------------------------------------------------------------------

def inbox_dir(story_dir: Path) -> Path:
    return story_dir / INBOX_DIR


def write_inbox_request(story_dir: Path, kind: str, **fields) -> Path:
    """Drop a request for a running `sp run` to pick up.

    kind is "phase" (phase, approved, comment), "retry" (action, comment)
    or "cancel".
    """
    d = inbox_dir(story_dir)
    d.mkdir(parents=True, exist_ok=True)
    data = {"kind": kind, "timestamp": now_iso(), **fields}
    path = d / f"{time.time_ns()}-{kind}.json"
    tmp = path.with_name("." + path.name)
    tmp.write_text(json.dumps(data, indent=2))
    tmp.rename(path)
    return path


class InboxChannel:
    """Polls stories/<id>/inbox/*.json for decisions.

    Requests that don't match the current wait (wrong kind or phase) are
    discarded with a warning.
    """

    def __init__(self, stories_dir: Path, poll_interval: float = 1.0):
        self.stories_dir = Path(stories_dir)
        self.poll_interval = poll_interval

    def _inbox(self, story_id: str) -> Path:
        return inbox_dir(self.stories_dir / story_id)

    def _requests(self, story_id: str) -> list[tuple[Path, dict]]:
        d = self._inbox(story_id)
        if not d.exists():
            return []
        requests = []
        for f in sorted(d.glob("*.json")):
            try:
                data = json.loads(f.read_text())
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"[{story_id}] Discarding unreadable inbox file {f.name}: {e}")
                f.unlink(missing_ok=True)
                continue
            requests.append((f, data))
        return requests

    def cancel_requested(self, story_id: str) -> bool:
        """True if a cancel request is waiting. Consumes it."""
        found = False
        for f, data in self._requests(story_id):
            if data.get("kind") == "cancel":
                f.unlink(missing_ok=True)
                found = True
        return found

    def expect_phase(self, story_id: str, phase: PipelinePhase) -> None:
        """Inbox files persist until read, so nothing to register."""

    def expect_retry(self, story_id: str, retry_info: RetryInfo) -> None:
        pass

    def clear(self, story_id: str) -> None:
        """Drop every pending request (stale ones from an earlier run)."""
        for f, _ in self._requests(story_id):
            f.unlink(missing_ok=True)

    def _poll(self, story_id: str, cancelled: threading.Event, accept):
        while True:
            for f, data in self._requests(story_id):
                kind = data.get("kind")
                if kind == "cancel":
                    cancelled.set()
                    f.unlink(missing_ok=True)
                    raise PipelineCancelled(story_id)
                decision = accept(data)
                f.unlink(missing_ok=True)
                if decision is not None:
                    return decision
                logger.warning(f"[{story_id}] Discarding inbox request not matching current wait: {data}")
            if cancelled.wait(self.poll_interval):
                raise PipelineCancelled(story_id)

    def wait_phase(self, story_id, phase, cancelled) -> PhaseDecision:
        def accept(data):
            if data.get("kind") != "phase":
                return None
            try:
                requested = PipelinePhase.parse(data.get("phase"))
            except ValueError:
                return None
            if requested != phase:
                return None
            return PhaseDecision(bool(data.get("approved", True)), data.get("comment"))
        return self._poll(story_id, cancelled, accept)

    def wait_retry(self, story_id, retry_info, cancelled) -> RetryDecision:
        def accept(data):
            if data.get("kind") != "retry":
                return None
            try:
                action = RetryAction.parse(data.get("action"))
            except ValueError:
                return None
            if action not in retry_info.allowed_actions:
                logger.warning(f"[{story_id}] Retry action {action.label} not allowed now")
                return None
            return RetryDecision(action, data.get("comment"))
        return self._poll(story_id, cancelled, accept)
