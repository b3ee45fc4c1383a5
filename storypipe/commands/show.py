"""
sp show - Show story details, tasks and status history.
"""

from pathlib import Path

from storypipe.lib.config import PipelineConfig
from storypipe.lib.errors import StoryNotFound
from storypipe.storage.stories import StoryStore


def cmd_show(args, root: Path, config: PipelineConfig) -> int:
    store = StoryStore(root, config.lock_timeout)
    try:
        story = store.get(args.id)
    except StoryNotFound:
        print(f"ERROR: Story '{args.id}' not found")
        return 2

    print(f"Story: {story.id}")
    print("=" * 60)
    print()
    print(f"Title:          {story.title}")
    print(f"Status:         {story.status.label}")
    print(f"Phase:          {story.current_phase.label}")
    print(f"Created:        {story.created_at}")
    if story.updated_at:
        print(f"Updated:        {story.updated_at}")
    if story.codebase_id:
        print(f"Codebase:       {story.codebase_id}")
    for label, value in [("Target file:", story.target_file),
                         ("Target class:", story.target_class),
                         ("Target method:", story.target_method)]:
        if value:
            print(f"{label:<16}{value}")

    if story.content.strip():
        print()
        print(story.content.rstrip())

    print()
    if story.tasks:
        done = sum(1 for t in story.tasks if t.status.label == "completed")
        print(f"Tasks:          {done}/{len(story.tasks)} completed")
        for t in story.tasks:
            fix = f" [fix, attempt {t.retry_attempt}]" if t.retry_attempt else ""
            print(f"  {t.index:>3}. [{t.status.label}] {t.title}{fix}")
    else:
        print("Tasks:          none (run planning first)")

    if args.audit:
        print()
        print("Status history:")
        for entry in store.audit(story.id):
            note = f" - {entry['note']}" if entry.get("note") else ""
            print(f"  {entry['at']}  {entry['status']}{note}")

    return 0
