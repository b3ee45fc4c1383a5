"""
Story status derivation.

A story's status is never stored as a single value. The store keeps four
independent markers and the status is computed from them, in priority order:

    failed > completed > in_progress > approved > (has tasks -> planned) > not_started

apply_status() returns the markers after a status transition, clearing the
ones the transition makes stale. Applying the same transition twice yields the
same markers.
"""

from dataclasses import dataclass, replace

from storypipe.lib.models import StoryStatus


@dataclass(frozen=True)
class StatusMarkers:
    approved: bool = False
    completed: bool = False
    in_progress: bool = False
    failed: bool = False

    def to_dict(self) -> dict:
        return {
            "approved": self.approved,
            "completed": self.completed,
            "in_progress": self.in_progress,
            "failed": self.failed,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "StatusMarkers":
        """Anything that is not literally True reads as absent."""
        if not isinstance(data, dict):
            return cls()
        return cls(
            approved=data.get("approved") is True,
            completed=data.get("completed") is True,
            in_progress=data.get("in_progress") is True,
            failed=data.get("failed") is True,
        )


def derive_status(markers: StatusMarkers, has_tasks: bool) -> StoryStatus:
    """Compute story status from markers. Pure."""
    if markers.failed:
        return StoryStatus.FAILED
    if markers.completed:
        return StoryStatus.COMPLETED
    if markers.in_progress:
        return StoryStatus.IN_PROGRESS
    if markers.approved:
        return StoryStatus.APPROVED
    if has_tasks:
        return StoryStatus.PLANNED
    return StoryStatus.NOT_STARTED


def apply_status(markers: StatusMarkers, status: StoryStatus) -> StatusMarkers:
    """Return markers after transitioning to status. Idempotent."""
    if status == StoryStatus.NOT_STARTED:
        return StatusMarkers()
    if status == StoryStatus.APPROVED:
        return replace(markers, approved=True, in_progress=False)
    if status == StoryStatus.IN_PROGRESS:
        return replace(markers, in_progress=True)
    if status == StoryStatus.COMPLETED:
        return replace(markers, completed=True, in_progress=False)
    if status == StoryStatus.FAILED:
        return replace(markers, failed=True, in_progress=False)
    # PLANNED is derived from the task set; no marker to change
    return markers
