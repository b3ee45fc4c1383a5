"""
File-backed story store.

Layout under the root directory:

  stories/STR-20260101-AB12/
    story.json      metadata (validated against story.schema.json)
    content.md      story text
    status.json     status markers + audit list
    pipeline.json   latest PipelineStatus snapshot
    tasks/task-01.json ...
    outputs/<phase>-<attempt>.json
    inbox/          approval requests written by the CLI

Story status is derived from status.json and the task files; it is never
written as a field of its own.
"""

import logging
import secrets
import shutil
import string
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Optional

from storypipe.lib.constants import CONTENT_FILE, STORY_FILE, STORY_ID_PATTERN
from storypipe.lib.errors import StoryNotFound
from storypipe.lib.models import (
    PipelinePhase,
    PipelineStatus,
    Story,
    StoryStatus,
    Task,
    TaskStatus,
    now_iso,
)
from storypipe.lib.status import StatusMarkers, derive_status
from storypipe.storage import history, markers, tasks
from storypipe.storage.jsonfile import read_json, write_json
from storypipe.storage.locking import story_lock

logger = logging.getLogger(__name__)

ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_story_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    suffix = "".join(secrets.choice(ID_ALPHABET) for _ in range(4))
    return f"STR-{now:%Y%m%d}-{suffix}"


class StoryStore:
    """Stories, markers, tasks and snapshots under one root directory."""

    def __init__(self, root: Path, lock_timeout: float = 60):
        self.root = Path(root)
        self.lock_timeout = lock_timeout

    @property
    def stories_dir(self) -> Path:
        return self.root / "stories"

    def story_dir(self, story_id: str) -> Path:
        if not STORY_ID_PATTERN.match(story_id):
            raise StoryNotFound(story_id)
        return self.stories_dir / story_id

    def exists(self, story_id: str) -> bool:
        try:
            return (self.story_dir(story_id) / STORY_FILE).exists()
        except StoryNotFound:
            return False

    def _require(self, story_id: str) -> Path:
        d = self.story_dir(story_id)
        if not (d / STORY_FILE).exists():
            raise StoryNotFound(story_id)
        return d

    def lock(self, story_id: str):
        """Per-story lock; use as a context manager."""
        return story_lock(self.root, story_id, self.lock_timeout)

    # ------------------------------------------------------------------
    # Stories
    # ------------------------------------------------------------------

    def create(self, title: str, content: str = "", codebase_id: Optional[str] = None,
               target_file: Optional[str] = None, target_class: Optional[str] = None,
               target_method: Optional[str] = None) -> Story:
        story_id = generate_story_id()
        while self.exists(story_id):
            story_id = generate_story_id()

        story = Story(
            id=story_id,
            title=title,
            content=content,
            created_at=now_iso(),
            codebase_id=codebase_id or None,
            target_file=target_file or None,
            target_class=target_class or None,
            target_method=target_method or None,
        )
        d = self.story_dir(story_id)
        with self.lock(story_id):
            write_json(d / STORY_FILE, story.to_dict(), "story")
            (d / CONTENT_FILE).write_text(content)
        logger.info(f"Created story {story_id}: {title}")
        return story

    def _load(self, d: Path) -> Optional[Story]:
        data = read_json(d / STORY_FILE)
        if data is None:
            return None
        content_path = d / CONTENT_FILE
        try:
            story = Story(
                id=data["id"],
                title=data["title"],
                content=content_path.read_text() if content_path.exists() else "",
                created_at=data["created_at"],
                updated_at=data.get("updated_at"),
                codebase_id=data.get("codebase_id"),
                target_file=data.get("target_file"),
                target_class=data.get("target_class"),
                target_method=data.get("target_method"),
                current_phase=PipelinePhase.parse(data.get("current_phase", 0)),
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to load story in {d}: {e}")
            return None
        story.tasks = tasks.list_tasks(d)
        story.status = derive_status(markers.read_markers(d), bool(story.tasks))
        return story

    def get(self, story_id: str) -> Story:
        """Load a story with derived status and tasks.

        Raises:
            StoryNotFound: unknown id or unreadable story.json
        """
        story = self._load(self._require(story_id))
        if story is None:
            raise StoryNotFound(story_id)
        return story

    def list_stories(self) -> list[Story]:
        if not self.stories_dir.exists():
            return []
        stories = []
        for d in sorted(self.stories_dir.iterdir()):
            if d.is_dir() and STORY_ID_PATTERN.match(d.name):
                story = self._load(d)
                if story is not None:
                    stories.append(story)
        return stories

    def delete(self, story_id: str) -> bool:
        """Remove the story with its tasks, markers and history."""
        if not self.exists(story_id):
            return False
        d = self.story_dir(story_id)
        with self.lock(story_id):
            shutil.rmtree(d)
        logger.info(f"Deleted story {story_id}")
        return True

    def set_current_phase(self, story_id: str, phase: PipelinePhase) -> None:
        d = self._require(story_id)
        with self.lock(story_id):
            story = self._load(d)
            if story is None:
                raise StoryNotFound(story_id)
            updated = replace(story, current_phase=phase, updated_at=now_iso())
            write_json(d / STORY_FILE, updated.to_dict(), "story")

    # ------------------------------------------------------------------
    # Status markers
    # ------------------------------------------------------------------

    def markers(self, story_id: str) -> StatusMarkers:
        return markers.read_markers(self._require(story_id))

    def status(self, story_id: str) -> StoryStatus:
        d = self._require(story_id)
        return derive_status(markers.read_markers(d), tasks.has_tasks(d))

    def set_status(self, story_id: str, status: StoryStatus, note: Optional[str] = None) -> StoryStatus:
        """Apply a status transition and return the derived status after it."""
        d = self._require(story_id)
        with self.lock(story_id):
            new_markers = markers.write_status(d, status, note)
            return derive_status(new_markers, tasks.has_tasks(d))

    def mark_approved(self, story_id: str, note: Optional[str] = None) -> None:
        d = self._require(story_id)
        with self.lock(story_id):
            markers.set_approved(d, note)

    def clear_failed(self, story_id: str, note: Optional[str] = None) -> None:
        d = self._require(story_id)
        with self.lock(story_id):
            markers.clear_failed(d, note)

    def audit(self, story_id: str) -> list[dict]:
        return markers.read_audit(self._require(story_id))

    def reset(self, story_id: str) -> None:
        """Clear all markers and the snapshot; tasks go back to Pending."""
        d = self._require(story_id)
        with self.lock(story_id):
            markers.write_status(d, StoryStatus.NOT_STARTED, "reset")
            history.delete_snapshot(d)
            for task in tasks.list_tasks(d):
                if task.status != TaskStatus.PENDING:
                    tasks.update_task_status(d, task.index, TaskStatus.PENDING)
            self.set_current_phase(story_id, PipelinePhase.NONE)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def tasks(self, story_id: str) -> list[Task]:
        return tasks.list_tasks(self._require(story_id))

    def update_task_status(self, story_id: str, index: int, status: TaskStatus) -> bool:
        d = self._require(story_id)
        with self.lock(story_id):
            return tasks.update_task_status(d, index, status)

    # ------------------------------------------------------------------
    # Snapshot and outputs
    # ------------------------------------------------------------------

    def load_snapshot(self, story_id: str) -> Optional[PipelineStatus]:
        return history.load_snapshot(self._require(story_id))

    def save_snapshot(self, status: PipelineStatus) -> None:
        d = self._require(status.story_id)
        with self.lock(status.story_id):
            history.save_snapshot(d, status)

    def save_phase_output(self, story_id: str, phase: PipelinePhase, attempt: int,
                          success: bool, data, message: Optional[str] = None) -> Path:
        d = self._require(story_id)
        with self.lock(story_id):
            return history.save_phase_output(d, phase, attempt, success, data, message)

    def phase_outputs(self, story_id: str) -> list[dict]:
        return history.list_phase_outputs(self._require(story_id))
