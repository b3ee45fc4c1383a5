"""
sp cancel - Cancel a running pipeline.
"""

from pathlib import Path

from storypipe.lib.config import PipelineConfig
from storypipe.storage.locking import is_run_locked
from storypipe.storage.stories import StoryStore
from storypipe.workflow.approval import write_inbox_request


def cmd_cancel(args, root: Path, config: PipelineConfig) -> int:
    store = StoryStore(root, config.lock_timeout)
    story_id = args.id
    if not store.exists(story_id):
        print(f"ERROR: Story '{story_id}' not found")
        return 2

    if not is_run_locked(root, story_id):
        print(f"ERROR: No pipeline is running for '{story_id}'")
        return 1

    write_inbox_request(store.story_dir(story_id), "cancel")
    print(f"Cancellation requested for '{story_id}'")
    print("The pipeline stops at the next phase boundary or approval wait.")
    return 0
