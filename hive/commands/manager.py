"""
hive manager - Run and inspect the manager loop.
"""

import logging
import os
import signal
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from hive.agents.detectors import detect_agent_state
from hive.db.client import hive_db
from hive.db.queries import agents as agent_queries
from hive.db.queries import escalations as escalation_queries
from hive.db.queries import pull_requests as pr_queries
from hive.db.queries import stories as story_queries
from hive.lib.config import HiveConfig, HivePaths
from hive.lib.tmux import MANAGER_SESSION, TmuxError, TmuxRuntime, stop_manager_session
from hive.lib.types import StoryStatus
from hive.manager import monitoring
from hive.manager.locking import LockTimeout, manager_lock, pid_alive, read_lock_info
from hive.manager.tick import ManagerContext, run_tick
from hive.manager.ticker import ManagerTicker
from hive.scheduler.health import health_check

logger = logging.getLogger(__name__)


def _context(root: Path, config: HiveConfig) -> ManagerContext:
    return ManagerContext(root=root, config=config, runtime=TmuxRuntime())


def running_manager_pid(root: Path) -> int | None:
    pid, _ = read_lock_info(HivePaths(root).lock_path)
    return pid if pid_alive(pid) and pid != os.getpid() else None


def cmd_manager_start(args, root: Path, config: HiveConfig) -> int:
    """Run the manager until interrupted, or once with --once."""
    ctx = _context(root, config)
    interval = args.interval if args.interval else config.manager.slow_poll_interval / 1000
    paths = ctx.paths

    try:
        with manager_lock(paths.lock_path, stale_ms=config.manager.lock_stale_ms) as lock:
            ticker = ManagerTicker(ctx, lock=lock)
            if args.once:
                ticker.request_tick()
                print(ticker.last_result)
                return 0
            print(f"Manager running (interval {interval:g}s). Ctrl-C to stop.")
            ticker.run_forever(interval)
    except LockTimeout as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0


def cmd_manager_check(args, root: Path, config: HiveConfig) -> int:
    """Ask a running manager to tick now, or run one tick here."""
    pid = running_manager_pid(root)
    if pid is not None:
        os.kill(pid, signal.SIGUSR1)
        print(f"Requested a tick from manager (pid {pid})")
        return 0

    ctx = _context(root, config)
    try:
        with manager_lock(ctx.paths.lock_path, stale_ms=config.manager.lock_stale_ms) as lock:
            ticker = ManagerTicker(ctx, lock=lock, tick_fn=run_tick)
            ticker.request_tick()
    except LockTimeout as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    print(ticker.last_result)
    return 0


def cmd_manager_health(args, root: Path, config: HiveConfig) -> int:
    """Reconcile agents and stories against live sessions."""
    try:
        live = TmuxRuntime().list_live_sessions()
    except TmuxError as e:
        print(f"ERROR: Cannot list sessions, nothing reconciled: {e}", file=sys.stderr)
        return 1
    with hive_db(HivePaths(root).db_path) as conn:
        result = health_check(conn, live)

    if not result.changed:
        print("Healthy: nothing to repair")
        return 0
    for agent_id in result.terminated:
        print(f"  terminated {agent_id} (session gone)")
    for story_id in result.orphaned_recovered:
        print(f"  recovered  {story_id} -> planned")
    for item in result.repaired:
        print(f"  repaired   {item}")
    return 0


def _screen_state(runtime, agent, live: set[str] | None) -> str:
    """What the agent's terminal shows right now."""
    session = agent["tmux_session"]
    if live is None:
        return "?"
    if not session or session not in live:
        return "no session"
    output = runtime.capture_output(session, monitoring.CAPTURE_LINES_SHORT)
    return detect_agent_state(output, agent["cli_tool"] or "claude").state.value


def cmd_manager_status(args, root: Path, config: HiveConfig) -> int:
    """Show manager, agent and queue status."""
    console = Console()
    pid = running_manager_pid(root)
    console.print(f"Manager: {'running (pid ' + str(pid) + ')' if pid else 'not running'}")

    with hive_db(HivePaths(root).db_path) as conn:
        agents = agent_queries.get_agents(conn, include_terminated=False)
        stories = story_queries.get_stories(conn)
        queue = pr_queries.get_merge_queue(conn)
        escalations = escalation_queries.get_active_escalations(conn)

    table = Table(title="Agents")
    table.add_column("ID")
    table.add_column("Type")
    table.add_column("Session")
    table.add_column("Status")
    table.add_column("Story")
    table.add_column("Screen")
    runtime = TmuxRuntime()
    try:
        live = set(runtime.list_live_sessions())
    except TmuxError as e:
        logger.warning(f"Cannot list sessions: {e}")
        live = None
    for agent in agents:
        table.add_row(
            agent["id"], agent["type"], agent["tmux_session"] or "-", agent["status"],
            agent["current_story_id"] or "-", _screen_state(runtime, agent, live),
        )
    console.print(table)

    counts: dict[str, int] = {}
    for story in stories:
        counts[story["status"]] = counts.get(story["status"], 0) + 1
    summary = Table(title="Stories")
    summary.add_column("Status")
    summary.add_column("Count", justify="right")
    for status in StoryStatus:
        if counts.get(status.value):
            summary.add_row(status.value, str(counts[status.value]))
    console.print(summary)

    console.print(f"Merge queue: {len(queue)} PR(s)   Active escalations: {len(escalations)}")
    return 0


def cmd_manager_stop(args, root: Path, config: HiveConfig) -> int:
    pid = running_manager_pid(root)
    if pid is not None:
        os.kill(pid, signal.SIGTERM)
        print(f"Sent stop to manager (pid {pid})")
    if stop_manager_session():
        print(f"Killed tmux session {MANAGER_SESSION}")
    if pid is None:
        print("Manager is not running")
    return 0


def cmd_manager_nudge(args, root: Path, config: HiveConfig) -> int:
    runtime = TmuxRuntime()
    if not runtime.is_running(args.session):
        print(f"ERROR: Session '{args.session}' is not running", file=sys.stderr)
        return 1
    monitoring.nudge_agent(runtime, args.session, message=args.message)
    if args.message:
        runtime.send_enter(args.session)
    print(f"Nudged {args.session}")
    return 0
