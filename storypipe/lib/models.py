"""
Data model for storypipe.

Enums keep their ordinals because UIs and stored snapshots carry them as
integers. Everything else is a plain dataclass with to_dict()/from_dict()
for the JSON files written by the storage layer.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, Optional, Union


class _ParsableEnum(IntEnum):
    """IntEnum that parses ints, digit strings, names and snake_case labels."""

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return cls(int(text))
            key = text.replace("-", "_").replace(" ", "_").upper()
            for member in cls:
                if member.name == key or member.name.replace("_", "") == key.replace("_", ""):
                    return member
        raise ValueError(f"Unknown {cls.__name__}: {value!r}")


class PipelinePhase(_ParsableEnum):
    NONE = 0
    ANALYSIS = 1      # Codebase analysis (optional)
    PLANNING = 2      # Task decomposition
    CODING = 3        # Code generation/modification
    DEBUGGING = 4     # Build and run unit tests on generated code
    REVIEWING = 5     # Quality review
    DEPLOYMENT = 6    # Deploy to codebase and build
    UNIT_TESTING = 7  # Run tests in the deployed codebase
    PULL_REQUEST = 8  # Open a pull request (optional)
    COMPLETED = 9


# Phases that run in order for every pipeline
PHASE_ORDER = [
    PipelinePhase.ANALYSIS,
    PipelinePhase.PLANNING,
    PipelinePhase.CODING,
    PipelinePhase.DEBUGGING,
    PipelinePhase.REVIEWING,
    PipelinePhase.DEPLOYMENT,
    PipelinePhase.UNIT_TESTING,
    PipelinePhase.PULL_REQUEST,
]

# Phases whose failures are build/test outcomes routed to the retry coordinator
VERIFICATION_PHASES = frozenset({
    PipelinePhase.DEBUGGING,
    PipelinePhase.DEPLOYMENT,
    PipelinePhase.UNIT_TESTING,
})


class PhaseState(_ParsableEnum):
    PENDING = 0
    WAITING_APPROVAL = 1
    RUNNING = 2
    COMPLETED = 3
    FAILED = 4
    SKIPPED = 5
    WAITING_RETRY_APPROVAL = 6


class StoryStatus(_ParsableEnum):
    NOT_STARTED = 0
    PLANNED = 1
    APPROVED = 2
    IN_PROGRESS = 3
    COMPLETED = 4
    FAILED = 5


class TaskStatus(_ParsableEnum):
    PENDING = 0
    IN_PROGRESS = 1
    COMPLETED = 2
    FAILED = 3


class TaskType(_ParsableEnum):
    ORIGINAL = 0
    FIX = 1


class FixTaskType(_ParsableEnum):
    BUILD_ERROR = 0
    TEST_FAILURE = 1
    INTEGRATION_ERROR = 2


class RetryReason(_ParsableEnum):
    BUILD_FAILED = 0
    TESTS_FAILED = 1
    INTEGRATION_FAILED = 2


class RetryAction(_ParsableEnum):
    AUTO_FIX = 0
    MANUAL_FIX = 1
    SKIP_TESTS = 2
    ABORT = 3


def now_iso() -> str:
    return datetime.now().isoformat()


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

@dataclass
class TestResult:
    """Outcome of a single test."""
    __test__ = False  # not a pytest test class

    test_name: str
    class_name: str = ""
    file_path: Optional[str] = None
    passed: bool = True
    skipped: bool = False
    error_message: Optional[str] = None
    stack_trace: Optional[str] = None
    duration: float = 0.0  # seconds
    is_new_test: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TestResult":
        return cls(
            test_name=data.get("test_name", ""),
            class_name=data.get("class_name", ""),
            file_path=data.get("file_path"),
            passed=bool(data.get("passed", True)),
            skipped=bool(data.get("skipped", False)),
            error_message=data.get("error_message"),
            stack_trace=data.get("stack_trace"),
            duration=float(data.get("duration", 0.0)),
            is_new_test=bool(data.get("is_new_test", False)),
        )


@dataclass
class TestSummary:
    """Reduction over one test run."""
    __test__ = False

    total_tests: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    new_tests_passed: int = 0
    new_tests_failed: int = 0
    existing_tests_passed: int = 0
    existing_tests_failed: int = 0
    total_duration: float = 0.0
    failed_tests: list[TestResult] = field(default_factory=list)

    @property
    def is_breaking_change(self) -> bool:
        return self.existing_tests_failed > 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["is_breaking_change"] = self.is_breaking_change
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TestSummary":
        return cls(
            total_tests=data.get("total_tests", 0),
            passed=data.get("passed", 0),
            failed=data.get("failed", 0),
            skipped=data.get("skipped", 0),
            new_tests_passed=data.get("new_tests_passed", 0),
            new_tests_failed=data.get("new_tests_failed", 0),
            existing_tests_passed=data.get("existing_tests_passed", 0),
            existing_tests_failed=data.get("existing_tests_failed", 0),
            total_duration=data.get("total_duration", 0.0),
            failed_tests=[TestResult.from_dict(t) for t in data.get("failed_tests", [])],
        )


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Original:
    """Origin tag for tasks produced by the planning phase."""
    pass


@dataclass(frozen=True)
class Fix:
    """Origin tag for tasks synthesized from a build/test failure.

    existing_code holds file contents captured before any rollback so the
    next coding pass can see what was generated.
    """
    retry_attempt: int
    fix_type: FixTaskType = FixTaskType.TEST_FAILURE
    error_message: str = ""
    error_location: Optional[str] = None
    stack_trace: Optional[str] = None
    suggested_fix: Optional[str] = None
    existing_code: Optional[str] = None


TaskOrigin = Union[Original, Fix]


@dataclass
class Task:
    """One file/project scoped unit of code change."""
    index: int
    title: str
    description: str = ""
    project_name: str = ""
    target_files: list[str] = field(default_factory=list)
    target_method: Optional[str] = None
    is_modification: bool = False
    full_path: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    origin: TaskOrigin = field(default_factory=Original)

    @property
    def type(self) -> TaskType:
        return TaskType.FIX if isinstance(self.origin, Fix) else TaskType.ORIGINAL

    @property
    def retry_attempt(self) -> int:
        return self.origin.retry_attempt if isinstance(self.origin, Fix) else 0

    def to_dict(self) -> dict:
        data = {
            "index": self.index,
            "title": self.title,
            "description": self.description,
            "project_name": self.project_name,
            "target_files": list(self.target_files),
            "target_method": self.target_method,
            "is_modification": self.is_modification,
            "full_path": self.full_path,
            "status": int(self.status),
            "type": int(self.type),
            "retry_attempt": self.retry_attempt,
        }
        if isinstance(self.origin, Fix):
            data["fix"] = {
                "fix_type": int(self.origin.fix_type),
                "error_message": self.origin.error_message,
                "error_location": self.origin.error_location,
                "stack_trace": self.origin.stack_trace,
                "suggested_fix": self.origin.suggested_fix,
                "existing_code": self.origin.existing_code,
            }
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        origin: TaskOrigin = Original()
        if TaskType.parse(data.get("type", 0)) == TaskType.FIX:
            fix = data.get("fix") or {}
            origin = Fix(
                retry_attempt=int(data.get("retry_attempt", 1)),
                fix_type=FixTaskType.parse(fix.get("fix_type", 1)),
                error_message=fix.get("error_message") or "",
                error_location=fix.get("error_location"),
                stack_trace=fix.get("stack_trace"),
                suggested_fix=fix.get("suggested_fix"),
                existing_code=fix.get("existing_code"),
            )
        return cls(
            index=int(data.get("index", 0)),
            title=data.get("title", ""),
            description=data.get("description", ""),
            project_name=data.get("project_name", ""),
            target_files=list(data.get("target_files", [])),
            target_method=data.get("target_method"),
            is_modification=bool(data.get("is_modification", False)),
            full_path=data.get("full_path"),
            status=TaskStatus.parse(data.get("status", 0)),
            origin=origin,
        )


@dataclass
class FixTask:
    """A fix proposed by the retry coordinator, before it becomes a Task."""
    index: int
    title: str
    description: str
    target_file: str = ""
    type: FixTaskType = FixTaskType.TEST_FAILURE
    error_message: str = ""
    error_location: Optional[str] = None
    stack_trace: Optional[str] = None
    suggested_fix: Optional[str] = None
    existing_code: Optional[str] = None
    project_name: str = ""
    full_path: Optional[str] = None

    def to_task(self, retry_attempt: int) -> Task:
        """Convert into an ordinary Task; the index is assigned by the indexer."""
        return Task(
            index=0,
            title=self.title,
            description=self.description,
            project_name=self.project_name or "default",
            target_files=[self.target_file] if self.target_file else [],
            is_modification=True,
            full_path=self.full_path,
            origin=Fix(
                retry_attempt=retry_attempt,
                fix_type=self.type,
                error_message=self.error_message,
                error_location=self.error_location,
                stack_trace=self.stack_trace,
                suggested_fix=self.suggested_fix,
                existing_code=self.existing_code,
            ),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = int(self.type)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "FixTask":
        return cls(
            index=int(data.get("index", 0)),
            title=data.get("title", ""),
            description=data.get("description", ""),
            target_file=data.get("target_file") or "",
            type=FixTaskType.parse(data.get("type", 1)),
            error_message=data.get("error_message") or "",
            error_location=data.get("error_location"),
            stack_trace=data.get("stack_trace"),
            suggested_fix=data.get("suggested_fix"),
            existing_code=data.get("existing_code"),
            project_name=data.get("project_name") or "",
            full_path=data.get("full_path"),
        )


# ---------------------------------------------------------------------------
# Stories
# ---------------------------------------------------------------------------

@dataclass
class Story:
    """The unit of requested change. Status is derived, never stored here."""
    id: str                                 # STR-20260101-AB12
    title: str
    content: str
    created_at: str
    updated_at: Optional[str] = None
    codebase_id: Optional[str] = None
    target_file: Optional[str] = None
    target_class: Optional[str] = None
    target_method: Optional[str] = None
    current_phase: PipelinePhase = PipelinePhase.NONE
    status: StoryStatus = StoryStatus.NOT_STARTED
    tasks: list[Task] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "codebase_id": self.codebase_id,
            "target_file": self.target_file,
            "target_class": self.target_class,
            "target_method": self.target_method,
            "current_phase": int(self.current_phase),
        }


# ---------------------------------------------------------------------------
# Pipeline status
# ---------------------------------------------------------------------------

@dataclass
class PhaseStatus:
    phase: PipelinePhase
    state: PhaseState = PhaseState.PENDING
    message: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    result: Any = None
    retry_attempt: int = 0

    def to_dict(self) -> dict:
        return {
            "phase": int(self.phase),
            "state": int(self.state),
            "message": self.message,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "result": self.result,
            "retry_attempt": self.retry_attempt,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PhaseStatus":
        return cls(
            phase=PipelinePhase.parse(data["phase"]),
            state=PhaseState.parse(data.get("state", 0)),
            message=data.get("message"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            result=data.get("result"),
            retry_attempt=int(data.get("retry_attempt", 0)),
        )


@dataclass
class RetryInfo:
    """Attached to the pipeline status while a retry decision is pending."""
    current_attempt: int
    max_attempts: int
    reason: RetryReason
    fix_tasks: list[FixTask] = field(default_factory=list)
    last_error: Optional[str] = None
    test_summary: Optional[TestSummary] = None
    last_attempt_at: Optional[str] = None
    allowed_actions: list[RetryAction] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "current_attempt": self.current_attempt,
            "max_attempts": self.max_attempts,
            "reason": int(self.reason),
            "fix_tasks": [t.to_dict() for t in self.fix_tasks],
            "last_error": self.last_error,
            "test_summary": self.test_summary.to_dict() if self.test_summary else None,
            "last_attempt_at": self.last_attempt_at,
            "allowed_actions": [int(a) for a in self.allowed_actions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RetryInfo":
        summary = data.get("test_summary")
        return cls(
            current_attempt=int(data.get("current_attempt", 0)),
            max_attempts=int(data.get("max_attempts", 0)),
            reason=RetryReason.parse(data.get("reason", 1)),
            fix_tasks=[FixTask.from_dict(t) for t in data.get("fix_tasks", [])],
            last_error=data.get("last_error"),
            test_summary=TestSummary.from_dict(summary) if summary else None,
            last_attempt_at=data.get("last_attempt_at"),
            allowed_actions=[RetryAction.parse(a) for a in data.get("allowed_actions", [])],
        )


@dataclass
class PipelineStatus:
    """Snapshot consumed by UIs and the CLI. Safe to poll."""
    story_id: str
    current_phase: PipelinePhase = PipelinePhase.NONE
    is_running: bool = False
    phases: list[PhaseStatus] = field(default_factory=list)
    retry_info: Optional[RetryInfo] = None
    retry_target_phase: Optional[PipelinePhase] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    # Entries replaced by a retry rewind, ordered by (phase, retry_attempt)
    history: list[PhaseStatus] = field(default_factory=list)

    @classmethod
    def initial(cls, story_id: str) -> "PipelineStatus":
        return cls(story_id=story_id, phases=[PhaseStatus(phase=p) for p in PHASE_ORDER])

    def phase(self, phase: PipelinePhase) -> PhaseStatus:
        for ps in self.phases:
            if ps.phase == phase:
                return ps
        raise KeyError(phase)

    def to_dict(self) -> dict:
        return {
            "story_id": self.story_id,
            "current_phase": int(self.current_phase),
            "is_running": self.is_running,
            "phases": [p.to_dict() for p in self.phases],
            "retry_info": self.retry_info.to_dict() if self.retry_info else None,
            "retry_target_phase": int(self.retry_target_phase) if self.retry_target_phase is not None else None,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "history": [p.to_dict() for p in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineStatus":
        retry = data.get("retry_info")
        target = data.get("retry_target_phase")
        return cls(
            story_id=data["story_id"],
            current_phase=PipelinePhase.parse(data.get("current_phase", 0)),
            is_running=bool(data.get("is_running", False)),
            phases=[PhaseStatus.from_dict(p) for p in data.get("phases", [])],
            retry_info=RetryInfo.from_dict(retry) if retry else None,
            retry_target_phase=PipelinePhase.parse(target) if target is not None else None,
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            history=[PhaseStatus.from_dict(p) for p in data.get("history", [])],
        )
