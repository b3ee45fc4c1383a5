"""
sp run - Run a story's pipeline in the foreground.

Approvals and retry decisions arrive through the story's inbox, written by
`sp approve`, `sp reject`, `sp retry` and `sp cancel` from another shell.
"""

from pathlib import Path

from storypipe.agents.registry import build_agents, build_fix_agent, build_rollback
from storypipe.lib.agents_config import check_binary_available, load_agents_config
from storypipe.lib.config import PipelineConfig
from storypipe.lib.errors import StoryAlreadyCompleted, StoryNotFound
from storypipe.lib.models import PhaseState
from storypipe.notifications import (
    FIX_TASKS_GENERATED,
    PHASE_PENDING_APPROVAL,
    RETRY_REQUIRED,
    Notifier,
    PipelineUpdate,
)
from storypipe.storage.locking import LockTimeout, run_lock
from storypipe.storage.stories import StoryStore
from storypipe.workflow.approval import InboxChannel
from storypipe.workflow.engine import Collaborators, PipelineEngine


def _print_update(update: PipelineUpdate) -> None:
    phase = f" {update.phase.label}" if update.phase is not None else ""
    print(f"[{update.update_type}]{phase}: {update.message}")

    sid = update.story_id
    if update.update_type == PHASE_PENDING_APPROVAL:
        print(f"  sp approve {sid}    or    sp reject {sid} -c \"<reason>\"")
    elif update.update_type == FIX_TASKS_GENERATED:
        for fix in update.data.get("fix_tasks", []):
            print(f"  {fix['index']}. {fix['title']}")
    elif update.update_type == RETRY_REQUIRED:
        attempt = update.data.get("current_attempt")
        max_attempts = update.data.get("max_attempts")
        print(f"  attempt {attempt}/{max_attempts}; decide with: sp retry {sid} <action>")


def cmd_run(args, root: Path, config: PipelineConfig) -> int:
    """Run the pipeline until it completes, fails or is cancelled."""
    store = StoryStore(root, config.lock_timeout)
    story_id = args.id
    if not store.exists(story_id):
        print(f"ERROR: Story '{story_id}' not found")
        return 2

    agents_config = load_agents_config(root)
    for phase, template in {**agents_config.phases, **agents_config.tests}.items():
        if not check_binary_available(template):
            print(f"WARNING: {phase.label} command not found on PATH: {template}")

    timeout = config.agent_timeout or None
    notifier = Notifier(desktop=config.desktop_notifications)
    notifier.subscribe(_print_update)

    channel = InboxChannel(store.stories_dir, config.poll_interval)
    collaborators = Collaborators(
        store=store,
        config=config,
        channel=channel,
        agents=build_agents(agents_config, root, timeout),
        fix_agent=build_fix_agent(agents_config, root, timeout),
        rollback=build_rollback(agents_config, root, timeout),
        notifier=notifier,
    )

    try:
        with run_lock(root, story_id):
            channel.clear(story_id)
            engine = PipelineEngine(story_id, collaborators, args.auto_approve)
            try:
                engine.prepare()
            except StoryAlreadyCompleted:
                print(f"ERROR: Story '{story_id}' is already completed")
                print(f"  sp reset {story_id}   # to run it again")
                return 1
            except StoryNotFound:
                print(f"ERROR: Story '{story_id}' not found")
                return 2

            print(f"Running pipeline for {story_id} (Ctrl+C to cancel)")
            try:
                final = engine.run()
            except KeyboardInterrupt:
                print("\nCancelled.")
                return 1
    except LockTimeout:
        print(f"ERROR: Pipeline already running for '{story_id}'")
        return 3

    print()
    if final.completed_at:
        print(f"Pipeline completed for {story_id}")
        return 0

    for ps in final.phases:
        if ps.state == PhaseState.FAILED:
            print(f"Pipeline stopped at {ps.phase.label}: {ps.message}")
            break
    print(f"  sp status {story_id}")
    return 1
