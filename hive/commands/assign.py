"""
hive assign - Scale teams to demand, then assign planned stories.
"""

from pathlib import Path

from hive.db.client import hive_db
from hive.lib.config import HiveConfig, HivePaths
from hive.lib.tmux import TmuxRuntime
from hive.scheduler.assignment import Scheduler


def cmd_assign(args, root: Path, config: HiveConfig) -> int:
    with hive_db(HivePaths(root).db_path) as conn:
        scheduler = Scheduler(conn, config, TmuxRuntime(), root)
        if not args.dry_run:
            scaling = scheduler.check_scaling()
            for agent_id in scaling.spawned:
                print(f"  spawned    {agent_id}")
            for agent_id in scaling.terminated:
                print(f"  terminated {agent_id}")
            for error in scaling.errors:
                print(f"  scaling error: {error}")
        result = scheduler.assign_stories(dry_run=args.dry_run)

    verb = "Would assign" if args.dry_run else "Assigned"
    for story_id, tier, agent_id in result.planned:
        print(f"  {story_id} -> {tier} {agent_id}")
    for story_id in result.blocked:
        print(f"  {story_id} blocked on dependencies")
    for error in result.errors:
        print(f"  ERROR: {error}")
    print(f"{verb} {len(result.planned)} stor{'y' if len(result.planned) == 1 else 'ies'}")
    return 1 if result.errors and not result.planned else 0
