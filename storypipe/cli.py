#!/usr/bin/env python3
"""storypipe CLI entrypoint."""

import argparse
import logging
import sys
from pathlib import Path

from storypipe.lib.config import PipelineConfig, load_pipeline_config, resolve_root
from storypipe.lib.models import PHASE_ORDER, RetryAction
from storypipe.storage.locking import LockTimeout
from storypipe.commands import new as cmd_new_module
from storypipe.commands import list as cmd_list_module
from storypipe.commands import show as cmd_show_module
from storypipe.commands import status as cmd_status_module
from storypipe.commands import run as cmd_run_module
from storypipe.commands import approve as cmd_approve_module
from storypipe.commands import retry as cmd_retry_module
from storypipe.commands import cancel as cmd_cancel_module
from storypipe.commands import reset as cmd_reset_module


def get_context(args) -> tuple[Path, PipelineConfig]:
    """Resolve the root directory and load pipeline.env from it."""
    root = resolve_root(args.root)
    root.mkdir(parents=True, exist_ok=True)
    return root, load_pipeline_config(root)


def _dispatch(handler):
    def run(args):
        root, config = get_context(args)
        try:
            return handler(args, root, config)
        except LockTimeout as e:
            print(f"ERROR: {e}")
            return 3
    return run


cmd_new = _dispatch(cmd_new_module.cmd_new)
cmd_list = _dispatch(cmd_list_module.cmd_list)
cmd_show = _dispatch(cmd_show_module.cmd_show)
cmd_status = _dispatch(cmd_status_module.cmd_status)
cmd_run = _dispatch(cmd_run_module.cmd_run)
cmd_approve = _dispatch(cmd_approve_module.cmd_approve)
cmd_reject = _dispatch(cmd_approve_module.cmd_reject)
cmd_retry = _dispatch(cmd_retry_module.cmd_retry)
cmd_cancel = _dispatch(cmd_cancel_module.cmd_cancel)
cmd_reset = _dispatch(cmd_reset_module.cmd_reset)
cmd_delete = _dispatch(cmd_reset_module.cmd_delete)


def main(argv=None):
    parser = argparse.ArgumentParser(prog='sp', description='Story pipeline CLI')
    parser.add_argument('--root', '-r', help='Data directory (default: $STORYPIPE_ROOT or ./.storypipe)')
    parser.add_argument('--verbose', '-v', action='count', default=0, help='Log more (-vv for debug)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    phases = [p.label for p in PHASE_ORDER]
    actions = [a.label for a in RetryAction]

    # sp new
    p_new = subparsers.add_parser('new', help='Create story')
    p_new.add_argument('title', help='Story title')
    p_new.add_argument('--content', '-c', help='Story text')
    p_new.add_argument('--file', '-f', help='Read story text from file ("-" for stdin)')
    p_new.add_argument('--codebase', help='Linked codebase id (enables analysis)')
    p_new.add_argument('--target-file', help='File the story targets')
    p_new.add_argument('--target-class', help='Class the story targets')
    p_new.add_argument('--target-method', help='Method the story targets')
    p_new.set_defaults(func=cmd_new)

    # sp list
    p_list = subparsers.add_parser('list', help='List stories')
    p_list.add_argument('--status', '-s', help='Only stories with this status')
    p_list.set_defaults(func=cmd_list)

    # sp show
    p_show = subparsers.add_parser('show', help='Show story details and tasks')
    p_show.add_argument('id', help='Story ID')
    p_show.add_argument('--audit', '-a', action='store_true', help='Include status history')
    p_show.set_defaults(func=cmd_show)

    # sp status
    p_status = subparsers.add_parser('status', help='Show pipeline status')
    p_status.add_argument('id', help='Story ID')
    p_status.add_argument('--json', action='store_true', help='Print the snapshot as JSON')
    p_status.set_defaults(func=cmd_status)

    # sp run
    p_run = subparsers.add_parser('run', help='Run pipeline in the foreground')
    p_run.add_argument('id', help='Story ID')
    p_run.add_argument('--auto-approve', action='store_true',
                       help='Skip approval gates and auto-fix verification failures')
    p_run.set_defaults(func=cmd_run)

    # sp approve
    p_approve = subparsers.add_parser('approve', help='Approve the phase waiting for approval')
    p_approve.add_argument('id', help='Story ID')
    p_approve.add_argument('--phase', choices=phases, help='Expected waiting phase')
    p_approve.add_argument('--comment', '-c', help='Comment')
    p_approve.set_defaults(func=cmd_approve)

    # sp reject
    p_reject = subparsers.add_parser('reject', help='Reject the phase waiting for approval')
    p_reject.add_argument('id', help='Story ID')
    p_reject.add_argument('--phase', choices=phases, help='Expected waiting phase')
    p_reject.add_argument('--comment', '-c', help='Reason')
    p_reject.set_defaults(func=cmd_reject)

    # sp retry
    p_retry = subparsers.add_parser('retry', help='Decide a pending retry')
    p_retry.add_argument('id', help='Story ID')
    p_retry.add_argument('action', choices=actions, help='Retry action')
    p_retry.add_argument('--comment', '-c', help='Comment')
    p_retry.set_defaults(func=cmd_retry)

    # sp cancel
    p_cancel = subparsers.add_parser('cancel', help='Cancel a running pipeline')
    p_cancel.add_argument('id', help='Story ID')
    p_cancel.set_defaults(func=cmd_cancel)

    # sp reset
    p_reset = subparsers.add_parser('reset', help='Clear status and pipeline history')
    p_reset.add_argument('id', help='Story ID')
    p_reset.set_defaults(func=cmd_reset)

    # sp delete
    p_delete = subparsers.add_parser('delete', help='Delete story')
    p_delete.add_argument('id', help='Story ID')
    p_delete.add_argument('--yes', '-y', action='store_true', help='Do not ask for confirmation')
    p_delete.set_defaults(func=cmd_delete)

    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
