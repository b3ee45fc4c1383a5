"""
Exception types for storypipe.

Kept in one module so storage, workflow and CLI code can raise and catch the
same types without circular imports.
"""


class PipelineError(Exception):
    """Base class for pipeline errors."""
    pass


class StoryNotFound(PipelineError):
    """Raised when a story id does not exist in the store."""

    def __init__(self, story_id: str):
        self.story_id = story_id
        super().__init__(f"Story not found: {story_id}")


class PipelineAlreadyRunning(PipelineError):
    """Raised when starting a pipeline that is already running."""

    def __init__(self, story_id: str):
        self.story_id = story_id
        super().__init__(f"Pipeline already running for story: {story_id}")


class StoryAlreadyCompleted(PipelineError):
    """Raised when starting a pipeline for a completed story."""

    def __init__(self, story_id: str):
        self.story_id = story_id
        super().__init__(f"Story already completed: {story_id}")


class AgentError(PipelineError):
    """An agent collaborator failed (crash, timeout, unreachable model).

    Never retried automatically.
    """

    def __init__(self, phase: str, message: str):
        self.phase = phase
        self.message = message
        super().__init__(f"[{phase}] {message}")


class PhaseError(PipelineError):
    """A phase failed and the pipeline must stop."""

    def __init__(self, phase: str, message: str, result: object = None):
        self.phase = phase
        self.message = message
        self.result = result
        super().__init__(f"[{phase}] {message}")


class ApprovalRejected(PipelineError):
    """A human declined a phase."""

    def __init__(self, phase: str, comment: str | None = None):
        self.phase = phase
        self.comment = comment
        super().__init__(f"Phase {phase} rejected" + (f": {comment}" if comment else ""))


class PipelineCancelled(PipelineError):
    """The pipeline was cancelled at a phase boundary or approval wait."""

    def __init__(self, story_id: str):
        self.story_id = story_id
        super().__init__(f"Pipeline cancelled: {story_id}")


class InvalidRetryAction(PipelineError):
    """A retry action is not legal in the coordinator's current state."""

    def __init__(self, action: str, state: str):
        self.action = action
        self.state = state
        super().__init__(f"Retry action {action} not allowed in state '{state}'")
