"""
Task index assignment.

Indices are 1-based and unique per story. Planning output replaces the whole
task set; fix tasks are appended after the highest index found on disk, so a
fresh process (or a fresh store instance) never reuses an index.
"""

import logging
from dataclasses import replace

from storypipe.lib.models import FixTask, Original, Task
from storypipe.storage import tasks as task_files
from storypipe.storage.stories import StoryStore

logger = logging.getLogger(__name__)


class TaskIndexer:
    def __init__(self, store: StoryStore):
        self.store = store

    def assign_initial(self, story_id: str, tasks: list[Task]) -> list[Task]:
        """Replace all of the story's tasks with tasks numbered 1..N, origin Original."""
        story_dir = self.store.story_dir(story_id)
        with self.store.lock(story_id):
            removed = task_files.delete_all_tasks(story_dir)
            assigned = [
                replace(t, index=i, origin=Original())
                for i, t in enumerate(tasks, 1)
            ]
            for task in assigned:
                task_files.write_task(story_dir, task)
        logger.info(f"[{story_id}] Assigned {len(assigned)} task(s), replaced {removed}")
        return assigned

    def append_fix(self, story_id: str, fix_tasks: list[FixTask], retry_attempt: int) -> list[Task]:
        """Append fix tasks after the current max index. Existing files are untouched."""
        if retry_attempt < 1:
            raise ValueError(f"retry_attempt must be >= 1, got {retry_attempt}")
        story_dir = self.store.story_dir(story_id)
        with self.store.lock(story_id):
            start = task_files.max_task_index(story_dir)
            appended = []
            for offset, fix in enumerate(fix_tasks, 1):
                task = replace(fix.to_task(retry_attempt), index=start + offset)
                task_files.write_task(story_dir, task)
                appended.append(task)
        if appended:
            logger.info(f"[{story_id}] Appended fix tasks {appended[0].index}..{appended[-1].index} (attempt {retry_attempt})")
        return appended
