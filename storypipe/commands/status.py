"""
sp status - Show the pipeline snapshot of a story.
"""

import json
from pathlib import Path

from storypipe.lib.config import PipelineConfig
from storypipe.lib.errors import StoryNotFound
from storypipe.lib.models import PipelineStatus
from storypipe.storage.locking import is_run_locked
from storypipe.storage.stories import StoryStore

STATE_MARKERS = {
    "pending": "[ ]",
    "waiting_approval": "[?]",
    "running": "[>]",
    "completed": "[x]",
    "failed": "[!]",
    "skipped": "[-]",
    "waiting_retry_approval": "[R]",
}


def print_snapshot(status: PipelineStatus, running: bool) -> None:
    print(f"Pipeline: {status.story_id}")
    print("=" * 60)
    print(f"Current phase:  {status.current_phase.label}")
    print(f"Running:        {'yes' if running else 'no'}")
    if status.started_at:
        print(f"Started:        {status.started_at}")
    if status.completed_at:
        print(f"Completed:      {status.completed_at}")
    print()

    for ps in status.phases:
        marker = STATE_MARKERS.get(ps.state.label, "[ ]")
        attempt = f" (attempt {ps.retry_attempt})" if ps.retry_attempt else ""
        message = f"  {ps.message.splitlines()[0]}" if ps.message else ""
        print(f"  {marker} {ps.phase.label:<13}{attempt}{message}")

    if status.retry_info:
        info = status.retry_info
        print()
        print(f"Retry:          attempt {info.current_attempt}/{info.max_attempts} ({info.reason.label})")
        if info.test_summary:
            s = info.test_summary
            breaking = "  BREAKING" if s.is_breaking_change else ""
            print(f"Tests:          {s.passed}/{s.total_tests} passed, {s.failed} failed{breaking}")
        if info.fix_tasks:
            print("Fix tasks:")
            for f in info.fix_tasks:
                print(f"  {f.index}. {f.title}")
        if info.allowed_actions:
            print(f"Actions:        {', '.join(a.label for a in info.allowed_actions)}")
            print(f"  sp retry {status.story_id} <action>")

    if status.history:
        print()
        print(f"Earlier runs:   {len(status.history)} phase run(s) replaced by retries")


def cmd_status(args, root: Path, config: PipelineConfig) -> int:
    store = StoryStore(root, config.lock_timeout)
    try:
        snapshot = store.load_snapshot(args.id)
    except StoryNotFound:
        print(f"ERROR: Story '{args.id}' not found")
        return 2

    if snapshot is None:
        if args.json:
            print(json.dumps(None))
        else:
            print(f"No pipeline has run for {args.id} yet.")
            print(f"  sp run {args.id}")
        return 0

    if args.json:
        print(json.dumps(snapshot.to_dict(), indent=2))
        return 0

    print_snapshot(snapshot, is_run_locked(root, args.id))
    return 0
