#!/usr/bin/env python3
"""Hive CLI entrypoint."""

import argparse
import logging
import sys
from pathlib import Path

from hive.commands import assign as cmd_assign_module
from hive.commands import escalation as cmd_escalation_module
from hive.commands import init as cmd_init_module
from hive.commands import manager as cmd_manager_module
from hive.commands import msg as cmd_msg_module
from hive.commands import pr as cmd_pr_module
from hive.commands import story as cmd_story_module
from hive.commands import team as cmd_team_module
from hive.lib.config import HiveRootNotFound, find_hive_root, load_config
from hive.lib.tmux import MANAGER_SESSION, start_manager_session

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str, verbose: bool = False) -> None:
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=resolved, format=LOG_FORMAT)


def get_root(args) -> Path:
    """Workspace root from --root or the nearest .hive/ above the cwd."""
    if args.root:
        return Path(args.root).resolve()
    try:
        return find_hive_root()
    except HiveRootNotFound as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(2)


def get_context(args):
    root = get_root(args)
    if not (root / ".hive").is_dir():
        print(f"ERROR: Not a Hive workspace: {root}. Run 'hive init'.", file=sys.stderr)
        sys.exit(2)
    config = load_config(root)
    setup_logging(config.logging.level, args.verbose)
    return root, config


def cmd_init(args):
    root = Path(args.root).resolve() if args.root else Path.cwd()
    setup_logging("info", args.verbose)
    return cmd_init_module.cmd_init(args, root)


def cmd_team_add(args):
    root, config = get_context(args)
    return cmd_team_module.cmd_team_add(args, root, config)


def cmd_team_list(args):
    root, config = get_context(args)
    return cmd_team_module.cmd_team_list(args, root, config)


def cmd_team_remove(args):
    root, config = get_context(args)
    return cmd_team_module.cmd_team_remove(args, root, config)


def cmd_story_add(args):
    root, config = get_context(args)
    return cmd_story_module.cmd_story_add(args, root, config)


def cmd_stories_list(args):
    root, config = get_context(args)
    return cmd_story_module.cmd_stories_list(args, root, config)


def cmd_my_stories(args):
    root, config = get_context(args)
    return cmd_story_module.cmd_my_stories(args, root, config)


def cmd_assign(args):
    root, config = get_context(args)
    return cmd_assign_module.cmd_assign(args, root, config)


def cmd_manager_start(args):
    root, config = get_context(args)
    if args.detach:
        command = f"hive --root {root} manager start"
        if args.interval:
            command += f" --interval {args.interval:g}"
        if start_manager_session(str(root), command):
            print(f"Manager started in tmux session {MANAGER_SESSION}")
        else:
            print(f"Manager session {MANAGER_SESSION} is already running")
        return 0
    return cmd_manager_module.cmd_manager_start(args, root, config)


def cmd_manager_check(args):
    root, config = get_context(args)
    return cmd_manager_module.cmd_manager_check(args, root, config)


def cmd_manager_health(args):
    root, config = get_context(args)
    return cmd_manager_module.cmd_manager_health(args, root, config)


def cmd_manager_status(args):
    root, config = get_context(args)
    return cmd_manager_module.cmd_manager_status(args, root, config)


def cmd_manager_stop(args):
    root, config = get_context(args)
    return cmd_manager_module.cmd_manager_stop(args, root, config)


def cmd_manager_nudge(args):
    root, config = get_context(args)
    return cmd_manager_module.cmd_manager_nudge(args, root, config)


def cmd_pr_submit(args):
    root, config = get_context(args)
    return cmd_pr_module.cmd_pr_submit(args, root, config)


def cmd_pr_queue(args):
    root, config = get_context(args)
    return cmd_pr_module.cmd_pr_queue(args, root, config)


def cmd_pr_review(args):
    root, config = get_context(args)
    return cmd_pr_module.cmd_pr_review(args, root, config)


def cmd_pr_approve(args):
    root, config = get_context(args)
    return cmd_pr_module.cmd_pr_approve(args, root, config)


def cmd_pr_reject(args):
    root, config = get_context(args)
    return cmd_pr_module.cmd_pr_reject(args, root, config)


def cmd_msg_send(args):
    root, config = get_context(args)
    return cmd_msg_module.cmd_msg_send(args, root, config)


def cmd_msg_reply(args):
    root, config = get_context(args)
    return cmd_msg_module.cmd_msg_reply(args, root, config)


def cmd_escalation_list(args):
    root, config = get_context(args)
    return cmd_escalation_module.cmd_escalation_list(args, root, config)


def cmd_escalation_resolve(args):
    root, config = get_context(args)
    return cmd_escalation_module.cmd_escalation_resolve(args, root, config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='hive', description='Hive agent control plane')
    parser.add_argument('--root', help='Workspace root (default: nearest directory with .hive/)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # hive init
    p_init = subparsers.add_parser('init', help='Create a Hive workspace')
    p_init.add_argument('--force', action='store_true', help='Re-initialize an existing workspace')
    p_init.set_defaults(func=cmd_init)

    # hive team
    p_team = subparsers.add_parser('team', help='Manage teams')
    p_team.set_defaults(func=cmd_team_list)
    team_sub = p_team.add_subparsers(dest='team_cmd')

    p_team_add = team_sub.add_parser('add', help='Add a team for a repository')
    p_team_add.add_argument('name', help='Team name')
    p_team_add.add_argument('--repo-url', required=True, help='Repository URL')
    p_team_add.add_argument('--repo-path', required=True, help='Repository path relative to the workspace')
    p_team_add.set_defaults(func=cmd_team_add)

    p_team_list = team_sub.add_parser('list', help='List teams')
    p_team_list.set_defaults(func=cmd_team_list)

    p_team_remove = team_sub.add_parser('remove', help='Delete a team with no active agents')
    p_team_remove.add_argument('name', help='Team name')
    p_team_remove.set_defaults(func=cmd_team_remove)

    # hive story add
    p_story = subparsers.add_parser('story', help='Create stories')
    story_sub = p_story.add_subparsers(dest='story_cmd', required=True)
    p_story_add = story_sub.add_parser('add', help='Add a story')
    p_story_add.add_argument('title', help='Story title')
    p_story_add.add_argument('--description', '-d', help='Description')
    p_story_add.add_argument('--acceptance', '-a', help='Acceptance criteria')
    p_story_add.add_argument('--team', '-t', help='Team name')
    p_story_add.add_argument('--complexity', '-c', type=int, choices=range(1, 14), metavar='1-13',
                             help='Complexity score')
    p_story_add.add_argument('--points', '-p', type=int, help='Story points')
    p_story_add.add_argument('--depends-on', action='append', default=[], help='Story this one depends on')
    p_story_add.add_argument('--status', choices=cmd_story_module.STORY_CREATE_STATUSES, default='planned',
                             help='Initial status')
    p_story_add.set_defaults(func=cmd_story_add)

    # hive stories list
    p_stories = subparsers.add_parser('stories', help='List stories')
    p_stories.set_defaults(func=cmd_stories_list, status=None)
    stories_sub = p_stories.add_subparsers(dest='stories_cmd')
    p_stories_list = stories_sub.add_parser('list', help='List stories')
    p_stories_list.add_argument('--status', help='Filter by status')
    p_stories_list.set_defaults(func=cmd_stories_list)

    # hive my-stories
    p_mine = subparsers.add_parser('my-stories', help="Show a session's stories")
    p_mine.add_argument('session', help='Agent tmux session')
    p_mine.add_argument('--all', action='store_true', help='Include unassigned planned stories')
    p_mine.set_defaults(func=cmd_my_stories)

    # hive assign
    p_assign = subparsers.add_parser('assign', help='Scale teams and assign planned stories')
    p_assign.add_argument('--dry-run', action='store_true', help='Show decisions without applying them')
    p_assign.set_defaults(func=cmd_assign)

    # hive manager
    p_manager = subparsers.add_parser('manager', help='Run and inspect the manager loop')
    p_manager.set_defaults(func=cmd_manager_status)
    manager_sub = p_manager.add_subparsers(dest='manager_cmd')

    p_start = manager_sub.add_parser('start', help='Start the manager loop')
    p_start.add_argument('--interval', type=float, help='Seconds between ticks')
    p_start.add_argument('--once', action='store_true', help='Run a single tick')
    p_start.add_argument('--detach', action='store_true', help=f'Run in tmux session {MANAGER_SESSION}')
    p_start.set_defaults(func=cmd_manager_start)

    p_check = manager_sub.add_parser('check', help='Run a tick now')
    p_check.set_defaults(func=cmd_manager_check)

    p_health = manager_sub.add_parser('health', help='Reconcile agents with live sessions')
    p_health.set_defaults(func=cmd_manager_health)

    p_status = manager_sub.add_parser('status', help='Show manager status')
    p_status.set_defaults(func=cmd_manager_status)

    p_stop = manager_sub.add_parser('stop', help='Stop the manager')
    p_stop.set_defaults(func=cmd_manager_stop)

    p_nudge = manager_sub.add_parser('nudge', help='Nudge an agent session')
    p_nudge.add_argument('session', help='Agent tmux session')
    p_nudge.add_argument('--message', '-m', help='Message to send instead of the role nudge')
    p_nudge.set_defaults(func=cmd_manager_nudge)

    # hive status
    p_overview = subparsers.add_parser('status', help='Show manager status')
    p_overview.set_defaults(func=cmd_manager_status)

    # hive pr
    p_pr = subparsers.add_parser('pr', help='Merge queue')
    p_pr.set_defaults(func=cmd_pr_queue)
    pr_sub = p_pr.add_subparsers(dest='pr_cmd')

    p_submit = pr_sub.add_parser('submit', help='Submit a branch to the merge queue')
    p_submit.add_argument('--branch', '-b', required=True, help='Branch name')
    p_submit.add_argument('--story', '-s', help='Story ID (default: parsed from the branch)')
    p_submit.add_argument('--team', '-t', help='Team name or ID')
    p_submit.add_argument('--pr-number', type=int, help='GitHub PR number')
    p_submit.add_argument('--pr-url', help='GitHub PR URL')
    p_submit.add_argument('--from', dest='from_session', help='Submitting agent session')
    p_submit.set_defaults(func=cmd_pr_submit)

    p_queue = pr_sub.add_parser('queue', help='Show the merge queue')
    p_queue.set_defaults(func=cmd_pr_queue)

    p_review = pr_sub.add_parser('review', help='Claim a PR for review')
    p_review.add_argument('pr_id', help='PR ID')
    p_review.add_argument('--from', dest='from_session', help='QA agent session')
    p_review.set_defaults(func=cmd_pr_review)

    p_approve = pr_sub.add_parser('approve', help='Approve a PR')
    p_approve.add_argument('pr_id', help='PR ID')
    p_approve.add_argument('--notes', '-n', help='Review notes')
    p_approve.add_argument('--from', dest='from_session', help='QA agent session')
    p_approve.set_defaults(func=cmd_pr_approve)

    p_reject = pr_sub.add_parser('reject', help='Reject a PR and send it back for fixes')
    p_reject.add_argument('pr_id', help='PR ID')
    p_reject.add_argument('--reason', '-r', required=True, help='Reason for rejection')
    p_reject.add_argument('--from', dest='from_session', help='QA agent session')
    p_reject.set_defaults(func=cmd_pr_reject)

    # hive msg
    p_msg = subparsers.add_parser('msg', help='Agent mailbox')
    msg_sub = p_msg.add_subparsers(dest='msg_cmd', required=True)

    p_send = msg_sub.add_parser('send', help='Send a message to a session')
    p_send.add_argument('to', help='Recipient session')
    p_send.add_argument('body', help='Message text')
    p_send.add_argument('--subject', help='Subject')
    p_send.add_argument('--from', dest='from_session', required=True, help='Sender session')
    p_send.set_defaults(func=cmd_msg_send)

    p_reply = msg_sub.add_parser('reply', help='Reply to a message')
    p_reply.add_argument('message_id', help='Message ID')
    p_reply.add_argument('body', help='Reply text')
    p_reply.add_argument('--from', dest='from_session', required=True, help='Sender session')
    p_reply.set_defaults(func=cmd_msg_reply)

    # hive escalation
    p_esc = subparsers.add_parser('escalation', help='Review escalations')
    p_esc.set_defaults(func=cmd_escalation_list, human=False)
    esc_sub = p_esc.add_subparsers(dest='escalation_cmd')

    p_esc_list = esc_sub.add_parser('list', help='List active escalations')
    p_esc_list.add_argument('--human', action='store_true', help='Only escalations waiting on a human')
    p_esc_list.set_defaults(func=cmd_escalation_list)

    p_esc_resolve = esc_sub.add_parser('resolve', help='Resolve an escalation')
    p_esc_resolve.add_argument('escalation_id', help='Escalation ID')
    p_esc_resolve.add_argument('resolution', help='How it was resolved')
    p_esc_resolve.add_argument('--from', dest='from_session', help='Resolving session or person')
    p_esc_resolve.set_defaults(func=cmd_escalation_resolve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
