"""
sp reset/delete - Start a story over, or remove it.
"""

from pathlib import Path

from storypipe.lib.config import PipelineConfig
from storypipe.storage.locking import LockTimeout, is_run_locked
from storypipe.storage.stories import StoryStore


def cmd_reset(args, root: Path, config: PipelineConfig) -> int:
    """Clear status markers and the pipeline snapshot; tasks return to pending."""
    store = StoryStore(root, config.lock_timeout)
    story_id = args.id
    if not store.exists(story_id):
        print(f"ERROR: Story '{story_id}' not found")
        return 2

    if is_run_locked(root, story_id):
        print(f"ERROR: Pipeline is running for '{story_id}'; cancel it first")
        return 1

    try:
        store.reset(story_id)
    except LockTimeout as e:
        print(f"ERROR: {e}")
        return 3

    print(f"Reset story '{story_id}'")
    print(f"\nRun 'sp run {story_id}' to start fresh")
    return 0


def cmd_delete(args, root: Path, config: PipelineConfig) -> int:
    store = StoryStore(root, config.lock_timeout)
    story_id = args.id
    if not store.exists(story_id):
        print(f"ERROR: Story '{story_id}' not found")
        return 2

    if is_run_locked(root, story_id):
        print(f"ERROR: Pipeline is running for '{story_id}'; cancel it first")
        return 1

    if not args.yes:
        story = store.get(story_id)
        answer = input(f"Delete '{story_id}' ({story.title})? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return 1

    try:
        store.delete(story_id)
    except LockTimeout as e:
        print(f"ERROR: {e}")
        return 3

    print(f"Deleted story '{story_id}'")
    return 0
