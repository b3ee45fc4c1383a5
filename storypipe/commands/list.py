"""
sp list - List stories.
"""

from pathlib import Path

from storypipe.lib.config import PipelineConfig
from storypipe.storage.locking import is_run_locked
from storypipe.storage.stories import StoryStore


def cmd_list(args, root: Path, config: PipelineConfig) -> int:
    store = StoryStore(root, config.lock_timeout)
    stories = store.list_stories()

    if args.status:
        stories = [s for s in stories if s.status.label == args.status]

    if not stories:
        print("No stories found.")
        print("Create one with: sp new \"<title>\"")
        return 0

    print(f"{'ID':<18} {'STATUS':<12} {'PHASE':<13} {'TASKS':>5}  TITLE")
    print("-" * 72)
    for s in stories:
        running = "*" if is_run_locked(root, s.id) else " "
        title = s.title if len(s.title) <= 40 else s.title[:37] + "..."
        print(f"{s.id:<18} {s.status.label:<12} {s.current_phase.label:<13} {len(s.tasks):>5} {running}{title}")

    print()
    print(f"{len(stories)} story(ies); * = pipeline running")
    return 0
