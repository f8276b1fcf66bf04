"""Assignment engine.

Routes planned stories to agents by complexity tier, in dependency order,
picking the least-loaded idle agent and spawning agents on demand.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from hive.db.client import flush
from hive.db.queries import agents as agent_queries
from hive.db.queries import logs
from hive.db.queries import stories as story_queries
from hive.db.queries import teams as team_queries
from hive.lib.config import HiveConfig
from hive.lib.types import AgentStatus, AgentType, StoryStatus
from hive.scheduler.capacity import apply_refactor_policy
from hive.scheduler.dependencies import are_dependencies_satisfied, topological_sort
from hive.scheduler.scaler import Scaler, ScalingResult
from hive.scheduler.selector import select_agent_with_least_workload
from hive.scheduler.spawner import AgentSpawnError, spawn_agent

logger = logging.getLogger(__name__)

DEFAULT_COMPLEXITY = 5

CYCLE_ERROR = "Circular dependency detected in planned stories; no stories assigned"


@dataclass
class AssignmentResult:
    assigned: int = 0
    errors: list[str] = field(default_factory=list)
    # (story_id, tier, agent_id) decisions; agent_id is "<spawn>" for a dry-run spawn
    planned: list[tuple[str, str, str]] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)


@dataclass
class _DryRunAgent:
    """Stand-in for an agent a dry run would spawn."""
    type: str

    def __getitem__(self, key):
        return {"id": "<spawn>", "type": self.type}[key]


def route_tier(complexity: int | None, config: HiveConfig) -> str:
    complexity = complexity or DEFAULT_COMPLEXITY
    if complexity <= config.scaling.junior_max_complexity:
        return AgentType.JUNIOR.value
    if complexity <= config.scaling.intermediate_max_complexity:
        return AgentType.INTERMEDIATE.value
    return AgentType.SENIOR.value


# Where each tier falls back when it has no idle agent and cannot spawn one
_FALLBACK_TIERS = {
    AgentType.JUNIOR.value: [AgentType.INTERMEDIATE.value, AgentType.SENIOR.value],
    AgentType.INTERMEDIATE.value: [AgentType.SENIOR.value],
    AgentType.SENIOR.value: [],
}


class Scheduler:
    """Assigns planned stories and keeps team capacity in line with demand."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: HiveConfig,
        runtime=None,
        root: Path | None = None,
        actor: str = logs.SCHEDULER_ACTOR,
    ):
        self.conn = conn
        self.config = config
        self.runtime = runtime
        self.root = root or Path.cwd()
        self.actor = actor
        self._dry_run_seniors = 0

    def _spawn(self, agent_type: str, team, dry_run: bool):
        if dry_run:
            if agent_type == AgentType.SENIOR.value:
                self._dry_run_seniors += 1
            return _DryRunAgent(agent_type)
        agent_id = spawn_agent(
            self.conn, self.runtime, self.config, self.root, agent_type, team=team, actor=self.actor,
        )
        return agent_queries.get_agent(self.conn, agent_id)

    def _pick_agent(self, tier: str, pool: list, team, dry_run: bool):
        """Idle agent at `tier`, else a spawned one, else an idle agent a tier up."""
        candidates = [a for a in pool if a["type"] == tier]
        if candidates:
            return select_agent_with_least_workload(self.conn, candidates)

        if tier != AgentType.SENIOR.value or self._senior_headroom(team):
            try:
                return self._spawn(tier, team, dry_run)
            except AgentSpawnError as e:
                logger.warning(f"[scheduler] Could not spawn {tier} for {team['name']}: {e}")

        for fallback in _FALLBACK_TIERS[tier]:
            candidates = [a for a in pool if a["type"] == fallback]
            if candidates:
                return select_agent_with_least_workload(self.conn, candidates)
        return None

    def _senior_headroom(self, team) -> bool:
        """Whether the team may take on another senior."""
        live = agent_queries.get_agents(
            self.conn, team_id=team["id"], agent_type=AgentType.SENIOR, include_terminated=False,
        )
        return len(live) + self._dry_run_seniors < self.config.scaling.max_seniors_per_team

    def _ensure_senior(self, team, dry_run: bool):
        seniors = agent_queries.get_agents(
            self.conn, team_id=team["id"], agent_type=AgentType.SENIOR, include_terminated=False,
        )
        if seniors:
            return seniors[0]
        return self._spawn(AgentType.SENIOR.value, team, dry_run)

    def assign_stories(self, dry_run: bool = False) -> AssignmentResult:
        """Assign every ready planned story. A dependency cycle aborts the whole pass."""
        result = AssignmentResult()
        self._dry_run_seniors = 0

        planned = apply_refactor_policy(
            story_queries.get_planned_stories(self.conn), self.config.scaling.refactor,
        )
        if not planned:
            return result

        ordered = topological_sort(self.conn, planned)
        if ordered is None:
            result.errors.append(CYCLE_ERROR)
            return result

        by_team: dict[str | None, list] = {}
        for story in ordered:
            by_team.setdefault(story["team_id"], []).append(story)

        for team_id, team_stories in by_team.items():
            team = team_queries.get_team(self.conn, team_id) if team_id else None
            if team is None:
                for story in team_stories:
                    result.errors.append(f"Story {story['id']} has no valid team")
                continue
            self._assign_team(team, team_stories, result, dry_run)

        if result.assigned and not dry_run:
            self._notify_assigned(result)
        if result.assigned:
            logger.info(f"[scheduler] Assigned {result.assigned} stories")
        return result

    def _assign_team(self, team, team_stories: list, result: AssignmentResult, dry_run: bool) -> None:
        try:
            senior = self._ensure_senior(team, dry_run)
        except AgentSpawnError as e:
            for story in team_stories:
                result.errors.append(f"Story {story['id']}: no senior for team {team['name']} ({e})")
            return

        pool = [
            a for a in agent_queries.get_agents(self.conn, team_id=team["id"], status=AgentStatus.IDLE)
            if a["type"] not in (AgentType.QA.value, AgentType.TECH_LEAD.value)
        ]
        if isinstance(senior, _DryRunAgent):
            pool.append(senior)

        for story in team_stories:
            if not are_dependencies_satisfied(self.conn, story["id"]):
                result.blocked.append(story["id"])
                continue

            tier = route_tier(story["complexity_score"], self.config)
            agent = self._pick_agent(tier, pool, team, dry_run)
            if agent is None:
                result.errors.append(f"No available agent for story {story['id']} ({tier} tier)")
                continue

            # An agent takes at most one story per pass
            if isinstance(agent, _DryRunAgent):
                pool = [a for a in pool if a is not agent]
            else:
                pool = [a for a in pool if isinstance(a, _DryRunAgent) or a["id"] != agent["id"]]
            result.planned.append((story["id"], agent["type"], agent["id"]))
            if dry_run:
                continue

            story_queries.update_story_status(
                self.conn, story["id"], StoryStatus.IN_PROGRESS, assigned_agent_id=agent["id"],
            )
            agent_queries.update_agent(
                self.conn, agent["id"], status=AgentStatus.WORKING, current_story_id=story["id"],
            )
            logs.create_log(
                self.conn, agent["id"], "STORY_ASSIGNED", f"Assigned to {agent['type']}",
                story_id=story["id"],
            )
            result.assigned += 1

    def _notify_assigned(self, result: AssignmentResult) -> None:
        """Tell each newly assigned agent about its story."""
        if self.runtime is None:
            return
        flush(self.conn)
        for story_id, _, agent_id in result.planned:
            agent = agent_queries.get_agent(self.conn, agent_id)
            story = story_queries.get_story(self.conn, story_id)
            if agent is None or story is None or not agent["tmux_session"]:
                continue
            session = agent["tmux_session"]
            self.runtime.send_text(session, "\n".join([
                f"# New assignment: {story_id} - {story['title']}",
                f"# Details: hive my-stories {session}",
                f"# When done: hive pr submit -b <branch> -s {story_id} --from {session}",
            ]))
            self.runtime.send_enter(session)

    def get_next_story_for_agent(self, agent_id: str) -> sqlite3.Row | None:
        """Highest-point unassigned planned story on the agent's team."""
        agent = agent_queries.get_agent(self.conn, agent_id)
        if agent is None or not agent["team_id"]:
            return None
        return self.conn.execute(
            """
            SELECT * FROM stories
            WHERE team_id = ? AND status = ? AND assigned_agent_id IS NULL
            ORDER BY COALESCE(story_points, 0) DESC, created_at, rowid
            LIMIT 1
            """,
            (agent["team_id"], StoryStatus.PLANNED.value),
        ).fetchone()

    def check_scaling(self) -> ScalingResult:
        """Scale seniors up to demand and reclaim idle agents from empty teams."""
        scaler = Scaler(self.conn, self.config, self.runtime, self.root, actor=self.actor)
        return scaler.rebalance()
