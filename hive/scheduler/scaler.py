"""Scaling controller: sizes each team's senior pool to its story-point workload."""

import logging
import math
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from hive.db.client import flush
from hive.db.queries import agents as agent_queries
from hive.db.queries import logs
from hive.db.queries import pull_requests as pr_queries
from hive.db.queries import stories as story_queries
from hive.db.queries import teams as team_queries
from hive.lib.config import HiveConfig
from hive.lib.types import WORKLOAD_STORY_STATUSES, AgentStatus, AgentType
from hive.scheduler.spawner import AgentSpawnError, spawn_agent

logger = logging.getLogger(__name__)

SCALE_UP = "scale_up"
SCALE_DOWN = "scale_down"
NO_CHANGE = "none"


@dataclass
class ScalingRecommendation:
    team_id: str
    team_name: str
    current_seniors: int
    recommended_seniors: int
    story_points: int
    action: str
    reason: str


@dataclass
class ScalingResult:
    recommendations: list[ScalingRecommendation] = field(default_factory=list)
    spawned: list[str] = field(default_factory=list)
    terminated: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def recommend_seniors(story_points: int, senior_capacity: int) -> int:
    """Seniors needed for a workload; never fewer than one."""
    if senior_capacity <= 0:
        return 1
    return max(1, math.ceil(story_points / senior_capacity))


def recommend(team_id: str, team_name: str, points: int, current: int, capacity: int) -> ScalingRecommendation:
    recommended = recommend_seniors(points, capacity)
    if recommended > current:
        action = SCALE_UP
        reason = (
            f"Workload of {points} points exceeds capacity of {current} senior(s) "
            f"({current * capacity} points)"
        )
    elif recommended < current and current > 1:
        action = SCALE_DOWN
        reason = f"Workload of {points} points only needs {recommended} senior(s)"
    else:
        action = NO_CHANGE
        reason = f"Current capacity matches workload of {points} points"
    return ScalingRecommendation(team_id, team_name, current, recommended, points, action, reason)


class Scaler:
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

    def _seniors(self, team_id: str) -> list:
        return agent_queries.get_agents(
            self.conn, team_id=team_id, agent_type=AgentType.SENIOR, include_terminated=False,
        )

    def team_points(self, team_id: str) -> int:
        return story_queries.get_team_story_points(self.conn, team_id, WORKLOAD_STORY_STATUSES)

    def analyze_scaling(self) -> list[ScalingRecommendation]:
        capacity = self.config.scaling.senior_capacity
        return [
            recommend(team["id"], team["name"], self.team_points(team["id"]), len(self._seniors(team["id"])), capacity)
            for team in team_queries.get_all_teams(self.conn)
        ]

    def scale_up(self, recommendations: list[ScalingRecommendation] | None = None) -> ScalingResult:
        """Spawn the seniors each under-capacity team is missing."""
        result = ScalingResult(recommendations=recommendations or self.analyze_scaling())
        for rec in result.recommendations:
            if rec.action != SCALE_UP:
                continue
            team = team_queries.get_team(self.conn, rec.team_id)
            spawned = 0
            for i in range(rec.recommended_seniors - rec.current_seniors):
                try:
                    agent_id = spawn_agent(
                        self.conn, self.runtime, self.config, self.root, AgentType.SENIOR.value,
                        team=team, index=rec.current_seniors + i + 1, actor=self.actor,
                    )
                except AgentSpawnError as e:
                    result.errors.append(f"Team {rec.team_name}: senior spawn failed ({e})")
                    break
                result.spawned.append(agent_id)
                spawned += 1
            if spawned:
                logs.create_log(
                    self.conn, self.actor, "TEAM_SCALED_UP",
                    f"Scaled {rec.team_name} from {rec.current_seniors} to {rec.current_seniors + spawned} seniors",
                    metadata={"team_id": rec.team_id, "story_points": rec.story_points},
                )
                logger.info(f"[scaler] {rec.team_name}: +{spawned} senior(s). {rec.reason}")
        return result

    def scale_down(self) -> ScalingResult:
        """Terminate idle agents on teams with no remaining workload.

        The team's first senior is always kept.
        """
        result = ScalingResult()
        for team in team_queries.get_all_teams(self.conn):
            if self.team_points(team["id"]) > 0:
                continue

            seniors = self._seniors(team["id"])
            keep = seniors[0]["id"] if seniors else None
            queue_busy = bool(pr_queries.get_merge_queue(self.conn, team_id=team["id"]))

            for agent in agent_queries.get_agents(self.conn, team_id=team["id"], status=AgentStatus.IDLE):
                if agent["id"] == keep or agent["type"] == AgentType.TECH_LEAD.value:
                    continue
                if agent["current_story_id"]:
                    continue
                # QA still has reviews to do
                if agent["type"] == AgentType.QA.value and queue_busy:
                    continue
                agent_queries.terminate_agent(self.conn, agent["id"])
                logs.create_log(
                    self.conn, agent["id"], "AGENT_TERMINATED", "Scaled down due to reduced workload",
                )
                result.terminated.append(agent["id"])
                if agent["tmux_session"] and self.runtime is not None:
                    flush(self.conn)
                    self.runtime.kill(agent["tmux_session"])
                logger.info(f"[scaler] Terminated idle {agent['type']} {agent['id']} on {team['name']}")
        return result

    def rebalance(self) -> ScalingResult:
        result = self.scale_up()
        down = self.scale_down()
        result.terminated.extend(down.terminated)
        return result

    def get_statistics(self) -> dict:
        """Agent counts by type and per-team capacity figures."""
        agents = agent_queries.get_active_agents(self.conn)
        by_type: dict[str, int] = {}
        for agent in agents:
            by_type[agent["type"]] = by_type.get(agent["type"], 0) + 1

        capacity = self.config.scaling.senior_capacity
        teams = []
        for team in team_queries.get_all_teams(self.conn):
            seniors = len(self._seniors(team["id"]))
            teams.append({
                "team": team["name"],
                "seniors": seniors,
                "story_points": self.team_points(team["id"]),
                "capacity": seniors * capacity,
            })
        return {"total_agents": len(agents), "by_type": by_type, "teams": teams}
