"""Tests for hive.scheduler: dependencies, capacity, assignment, scaling, health."""

import pytest

from hive.db.queries import agents as agent_queries
from hive.db.queries import logs
from hive.db.queries import pull_requests as pr_queries
from hive.db.queries import stories as story_queries
from hive.lib.config import HiveConfig, ModelConfig, RefactorConfig
from hive.lib.types import StoryStatus
from hive.scheduler.assignment import CYCLE_ERROR, Scheduler, route_tier
from hive.scheduler.capacity import apply_refactor_policy, refactor_budget
from hive.scheduler.dependencies import are_dependencies_satisfied, topological_sort
from hive.scheduler.health import health_check
from hive.scheduler.scaler import SCALE_DOWN, SCALE_UP, Scaler, recommend, recommend_seniors
from hive.scheduler.spawner import AgentSpawnError, build_agent_command, spawn_agent


def planned(conn, team, title="Story", complexity=2, points=3, story_id=None):
    return story_queries.create_story(
        conn, title, team_id=team["id"], complexity_score=complexity, story_points=points,
        status=StoryStatus.PLANNED, story_id=story_id,
    )


class TestDependencies:

    def test_topological_order(self, conn, team):
        a = planned(conn, team, "A")
        b = planned(conn, team, "B")
        c = planned(conn, team, "C")
        story_queries.add_dependency(conn, a, c)
        ordered = topological_sort(conn, story_queries.get_planned_stories(conn))
        ids = [s["id"] for s in ordered]
        assert ids.index(c) < ids.index(a)
        assert ids == [b, c, a]

    def test_cycle_returns_none(self, conn, team):
        a = planned(conn, team, "A")
        b = planned(conn, team, "B")
        story_queries.add_dependency(conn, a, b)
        story_queries.add_dependency(conn, b, a)
        assert topological_sort(conn, story_queries.get_planned_stories(conn)) is None

    def test_self_dependency_is_a_cycle(self, conn, team):
        a = planned(conn, team, "A")
        planned(conn, team, "B")
        story_queries.add_dependency(conn, a, a)
        assert topological_sort(conn, story_queries.get_planned_stories(conn)) is None

    def test_out_of_batch_dependencies_ignored_for_ordering(self, conn, team):
        a = planned(conn, team, "A")
        story_queries.add_dependency(conn, a, "STORY-ELSEWHERE")
        assert [s["id"] for s in topological_sort(conn, story_queries.get_planned_stories(conn))] == [a]

    @pytest.mark.parametrize("status,satisfied", [
        (StoryStatus.MERGED, True),
        (StoryStatus.IN_PROGRESS, True),
        (StoryStatus.QA_FAILED, True),
        (StoryStatus.PLANNED, False),
        (StoryStatus.DRAFT, False),
    ])
    def test_satisfaction_by_status(self, conn, team, status, satisfied):
        dep = story_queries.create_story(conn, "Dep", team_id=team["id"], status=status)
        story = planned(conn, team)
        story_queries.add_dependency(conn, story, dep)
        assert are_dependencies_satisfied(conn, story) is satisfied

    def test_dangling_dependency_unsatisfied(self, conn, team):
        story = planned(conn, team)
        story_queries.add_dependency(conn, story, "STORY-GONE")
        assert not are_dependencies_satisfied(conn, story)


class TestRefactorCapacity:

    def stories(self, conn, team):
        planned(conn, team, "Feature one", points=5, story_id="STORY-F1")
        planned(conn, team, "Feature two", points=5, story_id="STORY-F2")
        planned(conn, team, "Refactor: small", points=2, story_id="STORY-R1")
        planned(conn, team, "Refactor: big", points=8, story_id="STORY-R2")
        return story_queries.get_planned_stories(conn)

    def test_disabled_holds_all_refactors(self, conn, team):
        kept = apply_refactor_policy(self.stories(conn, team), RefactorConfig())
        assert [s["id"] for s in kept] == ["STORY-F1", "STORY-F2"]

    def test_budget_is_share_of_feature_points(self, conn, team):
        policy = RefactorConfig(enabled=True, capacity_percent=20)
        kept = apply_refactor_policy(self.stories(conn, team), policy)
        assert [s["id"] for s in kept] == ["STORY-F1", "STORY-F2", "STORY-R1"]

    def test_budget_edges(self):
        assert refactor_budget(0, RefactorConfig(enabled=True, capacity_percent=50)) == 0
        assert refactor_budget(0, RefactorConfig(enabled=True, allow_without_feature_work=True)) == float("inf")
        assert refactor_budget(3, RefactorConfig(enabled=True, capacity_percent=10)) == 1


class TestSpawner:

    def test_unsafe_command(self):
        assert build_agent_command(ModelConfig(model="sonnet")) == (
            "claude --dangerously-skip-permissions --model sonnet"
        )

    def test_safe_command(self):
        assert build_agent_command(ModelConfig(model="o3", cli_tool="codex", safety_mode="safe")) == (
            "codex --model o3"
        )

    def test_unknown_cli(self):
        with pytest.raises(AgentSpawnError):
            build_agent_command(ModelConfig(model="x", cli_tool="cursor"))

    def test_spawn_creates_row_and_session(self, conn, team, runtime, root):
        agent_id = spawn_agent(conn, runtime, HiveConfig(), root, "junior", team=team)
        agent = agent_queries.get_agent(conn, agent_id)
        assert agent["tmux_session"] == "hive-junior-alpha"
        assert agent["status"] == "idle"
        assert runtime.spawned[0][0] == "hive-junior-alpha"
        assert runtime.texts_to("hive-junior-alpha")

    def test_second_spawn_gets_next_name(self, conn, team, runtime, root):
        spawn_agent(conn, runtime, HiveConfig(), root, "junior", team=team)
        second = spawn_agent(conn, runtime, HiveConfig(), root, "junior", team=team)
        assert agent_queries.get_agent(conn, second)["tmux_session"] == "hive-junior-alpha-2"

    def test_no_runtime(self, conn, team, root):
        with pytest.raises(AgentSpawnError):
            spawn_agent(conn, None, HiveConfig(), root, "junior", team=team)


class TestRouting:

    @pytest.mark.parametrize("complexity,tier", [
        (1, "junior"), (3, "junior"), (4, "intermediate"), (5, "intermediate"), (6, "senior"), (None, "intermediate"),
    ])
    def test_route_tier(self, complexity, tier):
        assert route_tier(complexity, HiveConfig()) == tier


class TestAssignment:

    def test_assigns_and_spawns(self, conn, team, runtime, root, config):
        story_id = planned(conn, team, complexity=2)
        result = Scheduler(conn, config, runtime, root).assign_stories()

        assert result.assigned == 1
        story = story_queries.get_story(conn, story_id)
        agent = agent_queries.get_agent(conn, story["assigned_agent_id"])
        assert story["status"] == "in_progress"
        assert agent["type"] == "junior"
        assert agent["status"] == "working"
        assert agent["current_story_id"] == story_id
        # A senior is ensured for the team
        assert [s for s, _, _ in runtime.spawned] == ["hive-senior-alpha", "hive-junior-alpha"]
        assert any(story_id in text for text in runtime.texts_to("hive-junior-alpha"))

    def test_prefers_least_loaded_idle_agent(self, conn, team, runtime, root, config, make_agent):
        make_agent("senior", session="hive-senior-alpha")
        busy = make_agent("junior", session="hive-junior-alpha")
        idle = make_agent("junior", session="hive-junior-alpha-2")
        old = story_queries.create_story(conn, "Old", team_id=team["id"], status=StoryStatus.IN_PROGRESS)
        story_queries.update_story(conn, old, assigned_agent_id=busy["id"])
        story_id = planned(conn, team, complexity=1)

        Scheduler(conn, config, runtime, root).assign_stories()
        assert story_queries.get_story(conn, story_id)["assigned_agent_id"] == idle["id"]

    def test_one_story_per_agent_per_pass(self, conn, team, runtime, root, config, make_agent):
        config.scaling.max_seniors_per_team = 1
        senior = make_agent("senior", session="hive-senior-alpha")
        first = planned(conn, team, complexity=8)
        second = planned(conn, team, complexity=8)

        result = Scheduler(conn, config, runtime, root).assign_stories()
        assert result.assigned == 1
        assert story_queries.get_story(conn, first)["assigned_agent_id"] == senior["id"]
        assert story_queries.get_story(conn, second)["status"] == "planned"
        assert any(second in e for e in result.errors)
        assert runtime.spawned == []

    def test_busy_senior_spawns_another(self, conn, team, runtime, root, config, make_agent):
        make_agent("senior", session="hive-senior-alpha", status="working")
        story_id = planned(conn, team, complexity=13)

        result = Scheduler(conn, config, runtime, root).assign_stories()
        assert result.assigned == 1
        assert [name for name, _, _ in runtime.spawned] == ["hive-senior-alpha-2"]
        story = story_queries.get_story(conn, story_id)
        assert story["status"] == "in_progress"
        assert agent_queries.get_agent(conn, story["assigned_agent_id"])["tmux_session"] == "hive-senior-alpha-2"

    def test_cycle_aborts_everything(self, conn, team, runtime, root, config):
        a = planned(conn, team, "A")
        b = planned(conn, team, "B")
        planned(conn, team, "Independent")
        story_queries.add_dependency(conn, a, b)
        story_queries.add_dependency(conn, b, a)

        result = Scheduler(conn, config, runtime, root).assign_stories()
        assert result.assigned == 0
        assert result.errors == [CYCLE_ERROR]
        assert runtime.spawned == []

    def test_blocked_dependency_skipped(self, conn, team, runtime, root, config):
        dep = story_queries.create_story(conn, "Draft dep", team_id=team["id"])
        story_id = planned(conn, team)
        story_queries.add_dependency(conn, story_id, dep)

        result = Scheduler(conn, config, runtime, root).assign_stories()
        assert result.blocked == [story_id]
        assert story_queries.get_story(conn, story_id)["status"] == "planned"

    def test_self_dependency_aborts_pass(self, conn, team, runtime, root, config):
        a = planned(conn, team, "A")
        planned(conn, team, "Independent")
        story_queries.add_dependency(conn, a, a)

        result = Scheduler(conn, config, runtime, root).assign_stories()
        assert result.errors == [CYCLE_ERROR]
        assert result.assigned == 0
        assert runtime.spawned == []

    def test_dependent_assigned_on_next_pass(self, conn, team, runtime, root, config):
        s2 = planned(conn, team, "Schema", complexity=2)
        s1 = planned(conn, team, "Endpoint", complexity=2)
        story_queries.add_dependency(conn, s1, s2)
        scheduler = Scheduler(conn, config, runtime, root)

        first = scheduler.assign_stories()
        assert first.assigned == 1
        assert first.blocked == [s1]
        assert story_queries.get_story(conn, s2)["status"] == "in_progress"
        assert story_queries.get_story(conn, s1)["status"] == "planned"

        second = scheduler.assign_stories()
        assert second.assigned == 1
        assert second.blocked == []
        story = story_queries.get_story(conn, s1)
        assert story["status"] == "in_progress"
        assert story["assigned_agent_id"] != story_queries.get_story(conn, s2)["assigned_agent_id"]

    def test_story_without_team(self, conn, runtime, root, config):
        story_id = story_queries.create_story(conn, "Orphan", status=StoryStatus.PLANNED)
        result = Scheduler(conn, config, runtime, root).assign_stories()
        assert result.errors == [f"Story {story_id} has no valid team"]

    def test_dry_run_changes_nothing(self, conn, team, runtime, root, config):
        story_id = planned(conn, team, complexity=2)
        result = Scheduler(conn, config, runtime, root).assign_stories(dry_run=True)

        assert result.assigned == 0
        assert result.planned == [(story_id, "junior", "<spawn>")]
        assert story_queries.get_story(conn, story_id)["status"] == "planned"
        assert agent_queries.get_agents(conn) == []
        assert runtime.spawned == []

    def test_next_story_for_agent(self, conn, team, runtime, root, config, make_agent):
        agent = make_agent("senior")
        planned(conn, team, "Small", points=1)
        big = planned(conn, team, "Big", points=8)
        assert Scheduler(conn, config, runtime, root).get_next_story_for_agent(agent["id"])["id"] == big


class TestScaling:

    def test_recommend_seniors(self):
        assert recommend_seniors(0, 20) == 1
        assert recommend_seniors(20, 20) == 1
        assert recommend_seniors(21, 20) == 2
        assert recommend_seniors(5, 0) == 1

    def test_recommend_actions(self):
        assert recommend("t", "alpha", 45, 1, 20).action == SCALE_UP
        assert recommend("t", "alpha", 5, 3, 20).action == SCALE_DOWN

    def test_scale_up_spawns_missing_seniors(self, conn, team, runtime, root, config, make_agent):
        make_agent("senior", session="hive-senior-alpha")
        planned(conn, team, points=30)
        result = Scaler(conn, config, runtime, root).scale_up()
        assert len(result.spawned) == 1
        assert runtime.spawned[0][0] == "hive-senior-alpha-2"
        assert logs.get_logs(conn, event_type="TEAM_SCALED_UP")

    def test_scale_down_keeps_first_senior_and_busy_qa(self, conn, team, runtime, root, config, make_agent):
        first = make_agent("senior", session="hive-senior-alpha")
        extra = make_agent("senior", session="hive-senior-alpha-2")
        junior = make_agent("junior", session="hive-junior-alpha")
        qa = make_agent("qa", session="hive-qa-alpha")
        pr_queries.create_pull_request(conn, "feature/x", team_id=team["id"])

        result = Scaler(conn, config, runtime, root).scale_down()
        assert set(result.terminated) == {extra["id"], junior["id"]}
        assert agent_queries.get_agent(conn, first["id"])["status"] == "idle"
        assert agent_queries.get_agent(conn, qa["id"])["status"] == "idle"
        assert set(runtime.killed) == {"hive-senior-alpha-2", "hive-junior-alpha"}

    def test_no_scale_down_with_workload(self, conn, team, runtime, root, config, make_agent):
        make_agent("senior", session="hive-senior-alpha")
        make_agent("junior", session="hive-junior-alpha")
        planned(conn, team, points=3)
        assert Scaler(conn, config, runtime, root).scale_down().terminated == []

    def test_statistics(self, conn, team, runtime, root, config, make_agent):
        make_agent("senior")
        planned(conn, team, points=7)
        stats = Scaler(conn, config, runtime, root).get_statistics()
        assert stats["by_type"] == {"senior": 1}
        assert stats["teams"][0]["story_points"] == 7


class TestHealth:

    def test_dead_session_releases_story(self, conn, team, make_agent):
        story_id = story_queries.create_story(conn, "S", team_id=team["id"], status=StoryStatus.IN_PROGRESS)
        agent = make_agent("junior", session="hive-junior-alpha", status="working", story_id=story_id)
        story_queries.update_story(conn, story_id, assigned_agent_id=agent["id"])

        result = health_check(conn, live_sessions=[])
        assert result.terminated == [agent["id"]]
        assert result.orphaned_recovered == [story_id]
        story = story_queries.get_story(conn, story_id)
        assert story["status"] == "planned"
        assert story["assigned_agent_id"] is None

    def test_submitted_story_keeps_status(self, conn, team, make_agent):
        story_id = story_queries.create_story(conn, "S", team_id=team["id"], status=StoryStatus.PR_SUBMITTED)
        agent = make_agent("junior", session="hive-junior-alpha", story_id=story_id)
        story_queries.update_story(conn, story_id, assigned_agent_id=agent["id"])

        health_check(conn, live_sessions=[])
        story = story_queries.get_story(conn, story_id)
        assert story["status"] == "pr_submitted"
        assert story["assigned_agent_id"] is None

    def test_unowned_in_progress_recovered(self, conn, team):
        story_id = story_queries.create_story(conn, "S", team_id=team["id"], status=StoryStatus.IN_PROGRESS)
        assert health_check(conn, []).orphaned_recovered == [story_id]

    def test_stale_agent_pointer_cleared(self, conn, team, make_agent):
        merged = story_queries.create_story(conn, "Done", team_id=team["id"], status=StoryStatus.MERGED)
        agent = make_agent("junior", session="hive-junior-alpha", status="working", story_id=merged)
        result = health_check(conn, ["hive-junior-alpha"])
        assert result.repaired == [agent["id"]]
        assert agent_queries.get_agent(conn, agent["id"])["current_story_id"] is None

    def test_idle_agent_with_story_marked_working(self, conn, team, make_agent):
        agent = make_agent("junior", session="hive-junior-alpha")
        story_id = story_queries.create_story(conn, "S", team_id=team["id"], status=StoryStatus.IN_PROGRESS)
        story_queries.update_story(conn, story_id, assigned_agent_id=agent["id"])
        health_check(conn, ["hive-junior-alpha"])
        refreshed = agent_queries.get_agent(conn, agent["id"])
        assert refreshed["status"] == "working"
        assert refreshed["current_story_id"] == story_id

    def test_idempotent(self, conn, team, make_agent):
        story_id = story_queries.create_story(conn, "S", team_id=team["id"], status=StoryStatus.IN_PROGRESS)
        agent = make_agent("junior", session="hive-junior-alpha", story_id=story_id)
        story_queries.update_story(conn, story_id, assigned_agent_id=agent["id"])
        assert health_check(conn, []).changed
        assert not health_check(conn, []).changed
