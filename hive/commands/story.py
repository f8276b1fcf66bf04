"""
hive story / stories / my-stories - Create and inspect stories.
"""

from pathlib import Path

from hive.db.client import hive_db
from hive.db.queries import agents as agent_queries
from hive.db.queries import stories as story_queries
from hive.db.queries import teams as team_queries
from hive.lib.config import HiveConfig, HivePaths
from hive.lib.types import ACTIVE_STORY_STATUSES, StoryStatus

STORY_CREATE_STATUSES = [s.value for s in (StoryStatus.DRAFT, StoryStatus.ESTIMATED, StoryStatus.PLANNED)]


def cmd_story_add(args, root: Path, config: HiveConfig) -> int:
    with hive_db(HivePaths(root).db_path) as conn:
        team = team_queries.get_team_by_name(conn, args.team) if args.team else None
        if args.team and team is None:
            print(f"ERROR: Team '{args.team}' not found")
            return 1

        missing = [d for d in args.depends_on if story_queries.get_story(conn, d) is None]
        if missing:
            print(f"ERROR: Unknown dependency: {', '.join(missing)}")
            return 1

        story_id = story_queries.create_story(
            conn,
            args.title,
            description=args.description or "",
            team_id=team["id"] if team else None,
            complexity_score=args.complexity,
            story_points=args.points,
            status=args.status,
            acceptance_criteria=args.acceptance,
        )
        for dependency in args.depends_on:
            story_queries.add_dependency(conn, story_id, dependency)

    print(f"Created {story_id} ({args.status})")
    return 0


def _print_story(story, verbose: bool = False) -> None:
    print(f"{story['id']:<16} {story['status']:<13} {story['complexity_score'] or '-':>3}  {story['title']}")
    if verbose:
        if story["description"]:
            print(f"    {story['description']}")
        if story["acceptance_criteria"]:
            print(f"    Acceptance: {story['acceptance_criteria']}")
        if story["branch_name"]:
            print(f"    Branch: {story['branch_name']}")


def cmd_stories_list(args, root: Path, config: HiveConfig) -> int:
    with hive_db(HivePaths(root).db_path) as conn:
        stories = story_queries.get_stories(conn, status=args.status)

    if not stories:
        print("No stories")
        return 0
    for story in stories:
        _print_story(story)
    return 0


def cmd_my_stories(args, root: Path, config: HiveConfig) -> int:
    """Stories owned by a session's agent; --all adds unassigned planned work on its team."""
    with hive_db(HivePaths(root).db_path) as conn:
        agent = agent_queries.get_agent_by_session(conn, args.session)
        if agent is None:
            print(f"ERROR: No agent for session '{args.session}'")
            return 1
        active = {s.value for s in ACTIVE_STORY_STATUSES}
        mine = [s for s in story_queries.get_stories_assigned_to(conn, agent["id"]) if s["status"] in active]
        available = story_queries.get_planned_stories(conn, team_id=agent["team_id"]) if args.all else []

    print(f"Agent {agent['id']} ({agent['type']})")
    if mine:
        for story in mine:
            _print_story(story, verbose=True)
    else:
        print("No active stories")
    if args.all:
        print(f"\nUnassigned planned stories: {len(available)}")
        for story in available:
            _print_story(story)
    return 0

