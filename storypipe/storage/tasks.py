"""
Task files.

Each task lives in tasks/task-NN.json (two digits minimum, more as needed).
Unreadable files are logged and skipped. Callers hold the story lock around
anything that writes.
"""

import logging
import re
from pathlib import Path

from storypipe.lib.constants import TASK_FILE_GLOB, TASKS_DIR
from storypipe.lib.models import Task, TaskStatus
from storypipe.storage.jsonfile import read_json, write_json

logger = logging.getLogger(__name__)

TASK_FILE_PATTERN = re.compile(r'^task-(\d+)\.json$')


def tasks_dir(story_dir: Path) -> Path:
    return story_dir / TASKS_DIR


def task_path(story_dir: Path, index: int) -> Path:
    return tasks_dir(story_dir) / f"task-{index:02d}.json"


def _task_files(story_dir: Path) -> list[tuple[int, Path]]:
    d = tasks_dir(story_dir)
    if not d.exists():
        return []
    files = []
    for f in d.glob(TASK_FILE_GLOB):
        m = TASK_FILE_PATTERN.match(f.name)
        if m:
            files.append((int(m.group(1)), f))
    return sorted(files)


def list_tasks(story_dir: Path) -> list[Task]:
    """All readable tasks, ordered by index."""
    tasks = []
    for index, f in _task_files(story_dir):
        data = read_json(f)
        if data is None:
            continue
        try:
            tasks.append(Task.from_dict(data))
        except (TypeError, ValueError, KeyError) as e:
            logger.warning(f"Skipping malformed task file {f}: {e}")
    return sorted(tasks, key=lambda t: t.index)


def has_tasks(story_dir: Path) -> bool:
    return bool(_task_files(story_dir))


def max_task_index(story_dir: Path) -> int:
    """Highest index among persisted task files, by file name. 0 when none."""
    files = _task_files(story_dir)
    return files[-1][0] if files else 0


def write_task(story_dir: Path, task: Task) -> None:
    if task.index < 1:
        raise ValueError(f"Task index must be >= 1, got {task.index}")
    write_json(task_path(story_dir, task.index), task.to_dict(), "task")


def delete_all_tasks(story_dir: Path) -> int:
    """Remove every task file. Returns the number removed."""
    removed = 0
    for _, f in _task_files(story_dir):
        f.unlink(missing_ok=True)
        removed += 1
    return removed


def update_task_status(story_dir: Path, index: int, status: TaskStatus) -> bool:
    """Set one task's status. Returns False if the task doesn't exist."""
    path = task_path(story_dir, index)
    data = read_json(path)
    if data is None:
        return False
    task = Task.from_dict(data)
    task.status = status
    write_task(story_dir, task)
    return True
