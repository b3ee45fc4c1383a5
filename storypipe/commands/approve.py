"""
sp approve/reject - Human decisions on a phase waiting for approval.

Both commands drop a request into the story's inbox; the `sp run` process
driving the pipeline picks it up.
"""

from pathlib import Path
from typing import Optional

from storypipe.lib.config import PipelineConfig
from storypipe.lib.models import PhaseState, PipelinePhase, PipelineStatus
from storypipe.storage.locking import is_run_locked
from storypipe.storage.stories import StoryStore
from storypipe.workflow.approval import write_inbox_request


def waiting_phase(snapshot: Optional[PipelineStatus]) -> Optional[PipelinePhase]:
    """The phase parked in WaitingApproval, if any."""
    if snapshot is None:
        return None
    for ps in snapshot.phases:
        if ps.state == PhaseState.WAITING_APPROVAL:
            return ps.phase
    return None


def _submit(args, root: Path, config: PipelineConfig, approved: bool) -> int:
    store = StoryStore(root, config.lock_timeout)
    story_id = args.id
    if not store.exists(story_id):
        print(f"ERROR: Story '{story_id}' not found")
        return 2

    if not is_run_locked(root, story_id):
        print(f"ERROR: No pipeline is running for '{story_id}'")
        print(f"  sp run {story_id}")
        return 1

    snapshot = store.load_snapshot(story_id)
    phase = waiting_phase(snapshot)
    if phase is None:
        print(f"ERROR: No phase of '{story_id}' is waiting for approval")
        return 1

    if args.phase:
        try:
            requested = PipelinePhase.parse(args.phase)
        except ValueError:
            print(f"ERROR: Unknown phase '{args.phase}'")
            return 1
        if requested != phase:
            print(f"ERROR: Phase {requested.label} is not waiting for approval (waiting: {phase.label})")
            return 1

    write_inbox_request(store.story_dir(story_id), "phase",
                        phase=phase.label, approved=approved, comment=args.comment)

    verb = "Approved" if approved else "Rejected"
    print(f"{verb} {phase.label} for '{story_id}'")
    if args.comment:
        print(f"  {args.comment}")
    return 0


def cmd_approve(args, root: Path, config: PipelineConfig) -> int:
    """Approve the phase waiting for approval."""
    return _submit(args, root, config, approved=True)


def cmd_reject(args, root: Path, config: PipelineConfig) -> int:
    """Reject the phase waiting for approval; the pipeline stops."""
    return _submit(args, root, config, approved=False)
