"""
Agent contracts.

An agent executes one phase. It returns an AgentResult; success=False is a
business failure (build broke, tests failed, review rejected). Raising
AgentError means the agent itself could not run.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from storypipe.lib.models import (
    FixTask,
    PipelinePhase,
    RetryReason,
    Story,
    Task,
    TestResult,
    TestSummary,
)


@dataclass
class PhaseContext:
    """Everything an agent gets to see for one phase run."""
    story: Story
    phase: PipelinePhase
    tasks: list[Task] = field(default_factory=list)
    previous_results: dict[str, Any] = field(default_factory=dict)  # phase label -> result
    retry_attempt: int = 0
    codebase_context: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "story": {
                **self.story.to_dict(),
                "content": self.story.content,
            },
            "phase": self.phase.label,
            "tasks": [t.to_dict() for t in self.tasks],
            "previous_results": self.previous_results,
            "retry_attempt": self.retry_attempt,
            "codebase_context": self.codebase_context,
        }


@dataclass
class AgentResult:
    success: bool
    data: dict = field(default_factory=dict)
    message: Optional[str] = None
    test_results: Optional[list[TestResult]] = None
    build_errors: list[dict] = field(default_factory=list)  # {file, line, message}
    raw_output: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: dict) -> "AgentResult":
        tests = payload.get("test_results")
        return cls(
            success=bool(payload.get("success", False)),
            data=payload.get("data") or {},
            message=payload.get("message"),
            test_results=[TestResult.from_dict(t) for t in tests] if tests is not None else None,
            build_errors=list(payload.get("build_errors") or []),
        )

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "data": self.data,
            "message": self.message,
            "test_results": [t.to_dict() for t in self.test_results] if self.test_results is not None else None,
            "build_errors": self.build_errors,
        }


@dataclass
class FixContext:
    """Failure handed to a fix agent."""
    story: Story
    phase: PipelinePhase
    reason: RetryReason
    retry_attempt: int
    error: str
    test_summary: Optional[TestSummary] = None
    build_errors: list[dict] = field(default_factory=list)
    existing_code: Optional[str] = None
    tasks: list[Task] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "story": {**self.story.to_dict(), "content": self.story.content},
            "phase": self.phase.label,
            "reason": self.reason.label,
            "retry_attempt": self.retry_attempt,
            "error": self.error,
            "test_summary": self.test_summary.to_dict() if self.test_summary else None,
            "build_errors": self.build_errors,
            "existing_code": self.existing_code,
            "tasks": [t.to_dict() for t in self.tasks],
        }


class Agent(Protocol):
    def run(self, context: PhaseContext) -> AgentResult: ...


class FixAgent(Protocol):
    def generate_fixes(self, context: FixContext) -> list[FixTask]: ...


# Called with the story before fix tasks are appended; undoes a deployment.
RollbackHook = Callable[[Story], None]

# Returns analysis text for a story's linked codebase, or None.
CodebaseProvider = Callable[[Story], Optional[str]]
