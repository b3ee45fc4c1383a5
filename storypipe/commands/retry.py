"""
sp retry - Decide what happens after a verification failure.
"""

from pathlib import Path

from storypipe.lib.config import PipelineConfig
from storypipe.lib.models import PhaseState, RetryAction
from storypipe.storage.locking import is_run_locked
from storypipe.storage.stories import StoryStore
from storypipe.workflow.approval import write_inbox_request


def cmd_retry(args, root: Path, config: PipelineConfig) -> int:
    store = StoryStore(root, config.lock_timeout)
    story_id = args.id
    if not store.exists(story_id):
        print(f"ERROR: Story '{story_id}' not found")
        return 2

    try:
        action = RetryAction.parse(args.action)
    except ValueError:
        valid = ", ".join(a.label for a in RetryAction)
        print(f"ERROR: Unknown retry action '{args.action}' (valid: {valid})")
        return 1

    if not is_run_locked(root, story_id):
        print(f"ERROR: No pipeline is running for '{story_id}'")
        return 1

    snapshot = store.load_snapshot(story_id)
    waiting = snapshot is not None and any(
        ps.state == PhaseState.WAITING_RETRY_APPROVAL for ps in snapshot.phases)
    if not waiting or snapshot.retry_info is None:
        print(f"ERROR: '{story_id}' is not waiting for a retry decision")
        return 1

    allowed = snapshot.retry_info.allowed_actions
    if action not in allowed:
        print(f"ERROR: {action.label} is not allowed now "
              f"(allowed: {', '.join(a.label for a in allowed)})")
        return 1

    write_inbox_request(store.story_dir(story_id), "retry",
                        action=action.label, comment=args.comment)
    print(f"Retry decision for '{story_id}': {action.label}")
    return 0
