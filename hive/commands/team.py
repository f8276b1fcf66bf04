"""
hive team - Manage teams (one team per repository).
"""

from pathlib import Path

from hive.db.client import hive_db
from hive.db.queries import agents as agent_queries
from hive.db.queries import logs
from hive.db.queries import teams as team_queries
from hive.lib.config import HiveConfig, HivePaths


def cmd_team_add(args, root: Path, config: HiveConfig) -> int:
    repo_path = Path(args.repo_path)
    if repo_path.is_absolute():
        try:
            repo_path = repo_path.relative_to(root)
        except ValueError:
            print(f"ERROR: Repository path must be inside the workspace: {args.repo_path}")
            return 2

    with hive_db(HivePaths(root).db_path) as conn:
        if team_queries.get_team_by_name(conn, args.name):
            print(f"ERROR: Team '{args.name}' already exists")
            return 1
        team_id = team_queries.create_team(conn, args.name, args.repo_url, str(repo_path))

    print(f"Created team {args.name} ({team_id})")
    return 0


def cmd_team_list(args, root: Path, config: HiveConfig) -> int:
    with hive_db(HivePaths(root).db_path) as conn:
        teams = team_queries.get_all_teams(conn)

    if not teams:
        print("No teams. Add one with: hive team add <name> --repo-url <url> --repo-path <path>")
        return 0
    for team in teams:
        print(f"{team['name']:<20} {team['id']:<16} {team['repo_path']:<30} {team['repo_url']}")
    return 0


def cmd_team_remove(args, root: Path, config: HiveConfig) -> int:
    """Delete a team. Its stories stay behind and are reported as teamless by assign."""
    with hive_db(HivePaths(root).db_path) as conn:
        team = team_queries.get_team_by_name(conn, args.name)
        if team is None:
            print(f"ERROR: Team '{args.name}' not found")
            return 1
        live = agent_queries.get_agents(conn, team_id=team["id"], include_terminated=False)
        if live:
            print(f"ERROR: Team '{args.name}' still has {len(live)} active agent(s)")
            return 1
        team_queries.delete_team(conn, team["id"])
        logs.create_log(conn, logs.CLI_ACTOR, "TEAM_REMOVED", f"Removed team {args.name}",
                        metadata={"team_id": team["id"]})

    print(f"Removed team {args.name}")
    return 0
