"""
One manager tick.

run_tick() runs a fixed sequence of phases. Each phase opens its own
short database section, and a failure in one phase is logged and does
not stop the phases after it. SQLite lock contention is the exception:
it aborts the tick so the ticker can report it and try again later.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator

from hive.agents import completion
from hive.agents.detectors import AgentState, StateDetectionResult, detect_agent_state
from hive.db.client import flush, hive_db, is_busy_error, ts_ago
from hive.db.queries import agents as agent_queries
from hive.db.queries import logs
from hive.db.queries import messages as message_queries
from hive.db.queries import pull_requests as pr_queries
from hive.db.queries import stories as story_queries
from hive.lib import github
from hive.lib.config import HiveConfig, HivePaths
from hive.lib.tmux import MANAGER_SESSION, SESSION_PREFIX, TmuxError
from hive.lib.types import StoryStatus
from hive.manager import escalations, monitoring, spin_down
from hive.merge import automerge, queue, sync
from hive.scheduler.assignment import Scheduler
from hive.scheduler.health import health_check

logger = logging.getLogger(__name__)

DONE_INFERENCE_CONFIDENCE_THRESHOLD = 0.82


@dataclass
class ManagerContext:
    root: Path
    config: HiveConfig
    runtime: object

    @property
    def paths(self) -> HivePaths:
        return HivePaths(self.root)

    @contextmanager
    def db(self) -> Iterator[sqlite3.Connection]:
        with hive_db(self.paths.db_path) as conn:
            yield conn

    def scheduler(self, conn: sqlite3.Connection) -> Scheduler:
        return Scheduler(conn, self.config, self.runtime, self.root, actor=logs.MANAGER_ACTOR)


@dataclass
class TickSummary:
    nudged: int = 0
    auto_progressed: int = 0
    messages_forwarded: int = 0
    escalations_created: int = 0
    escalations_resolved: int = 0
    queued_pr_count: int = 0
    observed: int = 0
    waiting: int = 0
    idle_at_prompt: int = 0
    needs_human: int = 0
    thinking: int = 0
    spun_down: int = 0
    spawned: int = 0
    failed_phases: list[str] = field(default_factory=list)
    skipped_phases: list[str] = field(default_factory=list)
    skipped: str | None = None

    def observe(self, result: StateDetectionResult) -> None:
        self.observed += 1
        self.waiting += result.is_waiting
        self.needs_human += result.needs_human
        self.idle_at_prompt += result.state == AgentState.IDLE_AT_PROMPT
        self.thinking += result.state == AgentState.THINKING

    def describe(self) -> str:
        if self.skipped:
            return f"skipped: {self.skipped}"
        return (
            f"observed={self.observed} waiting={self.waiting} needs_human={self.needs_human} "
            f"nudged={self.nudged} forwarded={self.messages_forwarded} "
            f"escalations=+{self.escalations_created}/-{self.escalations_resolved} "
            f"auto_progressed={self.auto_progressed} queued_prs={self.queued_pr_count} "
            f"spun_down={self.spun_down} spawned={self.spawned}"
        )


@dataclass
class _TickState:
    live: list[str] | None = None
    escalated: set[str] = field(default_factory=set)


def _live_agent_sessions(runtime) -> list[str]:
    return [
        s for s in runtime.list_live_sessions()
        if s.startswith(SESSION_PREFIX) and s != MANAGER_SESSION
    ]


def _known_live(state: _TickState) -> list[str]:
    if state.live is None:
        raise TmuxError("live sessions unknown this tick")
    return state.live


def _cli_tool(agent) -> str:
    return (agent["cli_tool"] if agent is not None else None) or "claude"


# Phases

def _backfill(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    with ctx.db() as conn:
        result = sync.backfill(conn)
    changed = len(result.pr_numbers) + len(result.closed_for_merged) + len(result.agents_cleared) + len(result.superseded)
    if changed:
        logger.info(f"[tick] Backfill repaired {changed} record(s)")


def _health(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    live = _live_agent_sessions(ctx.runtime)
    with ctx.db() as conn:
        result = health_check(conn, live)
        if result.changed:
            logger.info(f"[tick] Health: terminated={len(result.terminated)} "
                        f"recovered={len(result.orphaned_recovered)} repaired={len(result.repaired)}")
            flush(conn)
            if result.orphaned_recovered:
                ctx.scheduler(conn).assign_stories()


def _merge_queue_check(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    with ctx.db() as conn:
        queue.check_merge_queue(conn, ctx.config, ctx.runtime, ctx.root)


def _auto_merge(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    with ctx.db() as conn:
        result = automerge.auto_merge_approved_prs(conn, ctx.config, ctx.root)
    if result.merged:
        logger.info(f"[tick] Auto-merged {len(result.merged)} PR(s)")


def _sync_merged(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    with ctx.db() as conn:
        sync.sync_merged_prs(conn, ctx.root)


def _sync_open(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    with ctx.db() as conn:
        imported = sync.sync_open_prs(conn, ctx.root, ctx.config.merge_queue.max_pr_age_hours)
        if imported:
            flush(conn)
            queue.check_merge_queue(conn, ctx.config, ctx.runtime, ctx.root)


def _stale_reviews(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    with ctx.db() as conn:
        sync.reconcile_stale_reviews(conn, ctx.root, ctx.config.merge_queue.stale_review_min_age_ms)


def _close_superseded(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    with ctx.db() as conn:
        sync.close_stale_prs(conn, ctx.root)


def _escalation_cleanup(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    live = _live_agent_sessions(ctx.runtime)
    manager = ctx.config.manager
    with ctx.db() as conn:
        summary.escalations_resolved += escalations.resolve_stale_escalations(
            conn, live, max(manager.nudge_cooldown_ms, manager.stuck_threshold_ms),
        )
        summary.escalations_resolved += escalations.resolve_story_state_escalations(
            conn, live, manager.stuck_threshold_ms,
        )
        queue.recover_orphaned_review_assignments(conn, live)


def _discover(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    state.live = _live_agent_sessions(ctx.runtime)
    monitoring.prune_trackers(state.live)


def _scan_sessions(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    for session in _known_live(state):
        try:
            with ctx.db() as conn:
                scan_session(ctx, conn, session, summary, state.escalated)
        except Exception as e:
            if is_busy_error(e):
                raise
            logger.warning(f"[tick] Session check failed for {session}: {e}")


def _dispatch_qa(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    with ctx.db() as conn:
        queue.dispatch_queued_prs(conn, ctx.runtime, _known_live(state))
        summary.queued_pr_count = len(pr_queries.get_merge_queue(conn))


def _rejections(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    with ctx.db() as conn:
        queue.handle_rejected_prs(conn, ctx.runtime, _known_live(state))


def _recover_qa_failed(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    with ctx.db() as conn:
        if queue.recover_unassigned_qa_failed(conn):
            flush(conn)
            ctx.scheduler(conn).assign_stories()


def _spin_down(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    live = _known_live(state)
    with ctx.db() as conn:
        stopped = spin_down.spin_down_merged_agents(conn, ctx.runtime, live)
        stopped += spin_down.spin_down_idle_agents(conn, ctx.runtime, live)
        flush(conn)
        scaling = ctx.scheduler(conn).check_scaling()
    summary.spun_down += len(stopped) + len(scaling.terminated)
    summary.spawned += len(scaling.spawned)
    for error in scaling.errors:
        logger.warning(f"[tick] Scaling: {error}")


def _nudge_stuck(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    with ctx.db() as conn:
        nudge_stuck_stories(ctx, conn, _known_live(state), summary)


def _notify_unassigned(ctx: ManagerContext, summary: TickSummary, state: _TickState) -> None:
    with ctx.db() as conn:
        notify_unassigned_stories(conn, ctx.runtime, _known_live(state))


PHASES: list[tuple[str, Callable[[ManagerContext, TickSummary, _TickState], None]]] = [
    ("backfill", _backfill),
    ("health", _health),
    ("merge_queue", _merge_queue_check),
    ("auto_merge", _auto_merge),
    ("sync_merged", _sync_merged),
    ("sync_open", _sync_open),
    ("stale_reviews", _stale_reviews),
    ("close_superseded", _close_superseded),
    ("escalation_cleanup", _escalation_cleanup),
    ("discover", _discover),
    ("scan_sessions", _scan_sessions),
    ("dispatch_qa", _dispatch_qa),
    ("rejections", _rejections),
    ("recover_qa_failed", _recover_qa_failed),
    ("spin_down", _spin_down),
    ("nudge_stuck", _nudge_stuck),
    ("notify_unassigned", _notify_unassigned),
]


def run_tick(ctx: ManagerContext) -> TickSummary:
    """Run every manager phase once."""
    summary = TickSummary()
    cluster = ctx.config.cluster
    if cluster.enabled and not cluster.is_leader:
        summary.skipped = "not the cluster leader"
        logger.info("[tick] Skipping tick: not the cluster leader")
        return summary

    state = _TickState()
    for name, phase in PHASES:
        try:
            phase(ctx, summary, state)
        except TmuxError as e:
            logger.warning(f"[{name}] Skipped this tick: {e}")
            summary.skipped_phases.append(name)
        except Exception as e:
            if is_busy_error(e):
                raise
            logger.warning(f"[tick] Phase {name} failed: {e}")
            summary.failed_phases.append(name)

    logger.info(f"[tick] {summary.describe()}")
    return summary


# Per-session logic

def scan_session(ctx: ManagerContext, conn: sqlite3.Connection, session: str, summary: TickSummary,
                 escalated: set[str]) -> None:
    """Observe one session and take at most one corrective action."""
    runtime, config = ctx.runtime, ctx.config
    agent = agent_queries.get_agent_by_session(conn, session)
    cli_tool = _cli_tool(agent)
    safety_mode = monitoring.safety_mode_for(config, agent)
    story_id = agent["current_story_id"] if agent is not None else None

    pending = message_queries.get_pending_messages(conn, session)
    if pending:
        flush(conn)
        summary.messages_forwarded += monitoring.forward_messages(runtime, session, pending)
        message_queries.mark_messages_read(conn, [m["id"] for m in pending])

    flush(conn)
    output = runtime.capture_output(session, monitoring.CAPTURE_LINES)
    monitoring.enforce_bypass_mode(runtime, session, output, cli_tool, safety_mode)

    now = monitoring.now_ms()
    result = detect_agent_state(output, cli_tool)
    result = escalations.apply_intervention_override(conn, session, story_id, result)
    static = monitoring.update_screen_static(
        session, output, now, config.manager.screen_static_inactivity_threshold_ms,
    )
    tracked = monitoring.update_state_tracking(session, result, now)
    summary.observe(result)
    logger.debug(f"[tick] {session}: state={result.state.value} waiting={result.is_waiting} "
                 f"needs_human={result.needs_human} unchanged={monitoring.format_duration(static.unchanged_for_ms)}")

    if not result.is_waiting:
        tracked.stuck_nudges = 0
        escalations.clear_intervention(session)

    if result.state == AgentState.PERMISSION_REQUIRED and safety_mode == "unsafe":
        flush(conn)
        if monitoring.auto_approve_permission(runtime, session):
            logs.create_log(conn, logs.MANAGER_ACTOR, "STORY_PROGRESS_UPDATE",
                            f"Auto-approved permission prompt for {session}", story_id=story_id,
                            metadata={"session_name": session, "detected_state": result.state.value})
            logger.info(f"[tick] Auto-approved permission prompt in {session}")
            return

    monitoring.handle_plan_approval(runtime, session, result, now, cli_tool, safety_mode)

    outcome = escalations.handle_escalation_and_nudge(
        conn, runtime, config, session, agent, result, cli_tool, output, now, escalated,
    )
    summary.nudged += outcome.nudged
    summary.escalations_created += outcome.escalation_created
    summary.escalations_resolved += outcome.resolved

    if outcome.acted or not static.should_run_ai or not result.is_waiting or result.needs_human:
        return

    monitoring.mark_ai_assessment(session, now)
    if not story_id:
        return
    story = story_queries.get_story(conn, story_id)
    if story is None or story["status"] != StoryStatus.IN_PROGRESS.value:
        return

    assessment = assess_done(ctx, conn, session, story_id, output, now, summary)
    if assessment is None:
        return

    if _says_done(assessment):
        if agent is not None and auto_progress_done_story(ctx, conn, story, agent, session, assessment):
            summary.auto_progressed += 1
        return

    if tracked.stuck_nudges >= config.manager.max_stuck_nudges_per_story:
        summary.escalations_created += escalations.mark_done_false(conn, session, story_id, assessment.reason, now)
        return

    short_reason = " ".join(assessment.reason.split())
    logs.create_log(conn, logs.MANAGER_ACTOR, "STORY_PROGRESS_UPDATE",
                    f"AI stall analysis nudge for {session}: {short_reason}", story_id=story_id,
                    metadata={"session_name": session, "unchanged_ms": static.unchanged_for_ms,
                              "ai_done": assessment.done, "ai_confidence": assessment.confidence})
    flush(conn)
    runtime.send_text(session, monitoring.with_nudge_envelope(
        f"# STALLED OUTPUT DETECTED: your terminal output has not changed for "
        f"{monitoring.format_duration(static.unchanged_for_ms)}.\n"
        f"# AI assessment: {short_reason}\n"
        "# Stop repeating status updates. Execute the next concrete step now (tests, then PR submit if done).\n"
        "# If complete, run:\n"
        f"#   hive pr submit -b $(git rev-parse --abbrev-ref HEAD) -s {story_id} --from {session}"
    ))
    runtime.send_enter(session)
    monitoring.record_nudge(session, result.state, now, stuck=True)
    summary.nudged += 1


def _says_done(assessment: completion.CompletionAssessment) -> bool:
    return assessment.done and assessment.confidence >= DONE_INFERENCE_CONFIDENCE_THRESHOLD


def assess_done(ctx: ManagerContext, conn: sqlite3.Connection, session: str, story_id: str, output: str,
                now: float, summary: TickSummary) -> completion.CompletionAssessment | None:
    """Run done-inference. A classifier timeout escalates and returns None."""
    flush(conn)
    assessment = completion.assess_completion(
        ctx.config.manager.completion_classifier, session, story_id, output,
    )
    logger.debug(f"[tick] {session}: done={assessment.done} confidence={assessment.confidence:.2f} "
                 f"reason={assessment.reason}")
    if completion.is_classifier_timeout(assessment.reason):
        summary.escalations_created += escalations.mark_classifier_timeout(
            conn, session, story_id, assessment.reason, now,
        )
        return None
    escalations.clear_intervention(session)
    return assessment


def resolve_story_branch(root: Path, story, agent) -> str | None:
    """The story's recorded branch, else the branch checked out in the agent's worktree."""
    if story["branch_name"] and story["branch_name"].strip():
        return story["branch_name"].strip()
    if not agent["worktree_path"]:
        return None
    return github.current_branch(root / agent["worktree_path"])


def auto_progress_done_story(ctx: ManagerContext, conn: sqlite3.Connection, story, agent, session: str,
                             assessment: completion.CompletionAssessment) -> bool:
    """Move a story the agent finished into the merge queue on its behalf."""
    story_id = story["id"]
    confidence = assessment.confidence
    metadata = {"session_name": session, "reason": assessment.reason, "confidence": confidence}

    if pr_queries.get_open_pr_for_story(conn, story_id) is not None:
        if story["status"] != StoryStatus.PR_SUBMITTED.value:
            story_queries.update_story_status(conn, story_id, StoryStatus.PR_SUBMITTED, recovery="auto_submit")
            logs.create_log(conn, logs.MANAGER_ACTOR, "STORY_PROGRESS_UPDATE",
                            f"Auto-progressed {story_id} to pr_submitted (existing PR detected)",
                            story_id=story_id, metadata={**metadata, "recovery": "done_inference_existing_pr"})
        flush(conn)
        ctx.runtime.send_text(session, monitoring.with_nudge_envelope(
            f"# AUTO-PROGRESS: Manager inferred {story_id} is complete (confidence {confidence:.2f}), "
            "detected existing PR, and moved story to PR-submitted state."
        ))
        ctx.runtime.send_enter(session)
        return True

    flush(conn)
    branch = resolve_story_branch(ctx.root, story, agent)
    if not branch:
        logger.warning(f"[tick] Cannot auto-submit {story_id}: no branch found")
        return False

    story_queries.update_story_status(
        conn, story_id, StoryStatus.PR_SUBMITTED, recovery="auto_submit", branch_name=branch,
    )
    pr_id = pr_queries.create_pull_request(
        conn, branch, story_id=story_id, team_id=story["team_id"], submitted_by=session,
    )
    logs.create_log(conn, logs.MANAGER_ACTOR, "PR_SUBMITTED",
                    f"Auto-submitted PR for {story_id} after AI completion inference", story_id=story_id,
                    metadata={**metadata, "recovery": "done_inference_auto_submit", "branch": branch,
                              "pr_id": pr_id})
    flush(conn)
    queue.check_merge_queue(conn, ctx.config, ctx.runtime, ctx.root)
    flush(conn)

    ctx.runtime.send_text(session, monitoring.with_nudge_envelope(
        f"# AUTO-PROGRESS: Manager inferred {story_id} is complete (confidence {confidence:.2f}), "
        f"auto-submitted branch {branch} to merge queue."
    ))
    ctx.runtime.send_enter(session)
    logger.info(f"[tick] Auto-submitted {story_id} from {branch}")
    return True


def _session_for_agent(agent, live: set[str]) -> str | None:
    for candidate in (agent["tmux_session"], f"hive-{agent['id']}", agent["id"]):
        if candidate and candidate in live:
            return candidate
    return None


def nudge_stuck_stories(ctx: ManagerContext, conn: sqlite3.Connection, live_sessions: list[str],
                        summary: TickSummary) -> None:
    """Nudge agents whose in_progress story has not moved past the stuck threshold."""
    config = ctx.config.manager
    live = set(live_sessions)
    static_threshold = max(1, config.screen_static_inactivity_threshold_ms)
    cooldown = max(config.nudge_cooldown_ms, static_threshold)
    stale_before = ts_ago(max(1, config.stuck_threshold_ms))

    stuck = [
        s for s in story_queries.get_stories(conn, status=StoryStatus.IN_PROGRESS)
        if s["updated_at"] < stale_before and s["assigned_agent_id"]
    ]
    for story in stuck:
        agent = agent_queries.get_agent(conn, story["assigned_agent_id"])
        session = _session_for_agent(agent, live) if agent is not None else None
        if session is None:
            continue

        now = monitoring.now_ms()
        tracked = monitoring.agent_states.get(session)
        if tracked is not None and (tracked.last_state in _HUMAN_STATES or now - tracked.last_nudge_ms < cooldown):
            continue

        flush(conn)
        output = ctx.runtime.capture_output(session, monitoring.CAPTURE_LINES_SHORT)
        result = detect_agent_state(output, _cli_tool(agent))
        if result.needs_human:
            continue
        if not result.is_waiting or result.state == AgentState.THINKING:
            monitoring.reset_stuck_nudges(session)
            escalations.clear_intervention(session)
            continue

        stuck_nudges = tracked.stuck_nudges if tracked is not None else 0
        if monitoring.static_unchanged_for(session, now) >= static_threshold:
            assessment = assess_done(ctx, conn, session, story["id"], output, now, summary)
            if assessment is None:
                continue
            if _says_done(assessment):
                if auto_progress_done_story(ctx, conn, story, agent, session, assessment):
                    summary.auto_progressed += 1
                    continue
            elif stuck_nudges >= config.max_stuck_nudges_per_story:
                summary.escalations_created += escalations.mark_done_false(
                    conn, session, story["id"], assessment.reason, now,
                )
                continue

        if stuck_nudges >= config.max_stuck_nudges_per_story:
            continue

        flush(conn)
        ctx.runtime.send_text(session, monitoring.with_nudge_envelope(_stuck_message(story["id"], session, result)))
        ctx.runtime.send_enter(session)
        monitoring.record_nudge(session, result.state, now, stuck=True)
        summary.nudged += 1


_HUMAN_STATES = {
    AgentState.ASKING_QUESTION,
    AgentState.AWAITING_SELECTION,
    AgentState.PLAN_APPROVAL,
    AgentState.PERMISSION_REQUIRED,
    AgentState.USER_DECLINED,
}


def _stuck_message(story_id: str, session: str, result: StateDetectionResult) -> str:
    submit = f"hive pr submit -b $(git rev-parse --abbrev-ref HEAD) -s {story_id} --from {session}"
    if result.state == AgentState.WORK_COMPLETE:
        return (
            f"# MANDATORY COMPLETION SIGNAL: execute now for {story_id}\n"
            f"{submit}\n"
            "# Do not stop at a summary. Completion requires the command above."
        )
    return (
        f"# REMINDER: Story {story_id} has been in progress for a while.\n"
        "# If stuck, escalate to your Senior or Tech Lead.\n"
        f"# If done, submit your PR: {submit}"
    )


def notify_unassigned_stories(conn: sqlite3.Connection, runtime, live_sessions: list[str]) -> int:
    """Tell waiting seniors how much planned work has no owner."""
    planned = story_queries.get_planned_stories(conn)
    if not planned:
        return 0

    notified = 0
    for session in live_sessions:
        if monitoring.get_agent_type(session) != "senior":
            continue
        agent = agent_queries.get_agent_by_session(conn, session)
        flush(conn)
        result = detect_agent_state(runtime.capture_output(session, monitoring.CAPTURE_LINES_SHORT), _cli_tool(agent))
        if result.is_waiting and not result.needs_human and result.state != AgentState.THINKING:
            runtime.send_text(session, monitoring.with_nudge_envelope(
                f"# {len(planned)} unassigned story(ies). Run: hive my-stories {session} --all"
            ))
            notified += 1
    return notified
