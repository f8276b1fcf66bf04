"""
Escalation ladder for agent sessions.

A waiting session is nudged once it has been unchanged past the stuck
threshold; a session blocked on a human gets exactly one escalation per
lookback window; a session that starts working again has its escalations
auto-resolved. Conversation interruptions get their own recovery ladder:
"continue", then a stronger prompt, then a session restart.
"""

import logging
import re
import sqlite3
from dataclasses import dataclass

from hive.agents.detectors import (
    AgentState,
    StateDetectionResult,
    describe_agent_state,
    detect_agent_state,
    is_interruption_prompt,
)
from hive.db.client import age_ms, flush, ts_ago
from hive.db.queries import agents as agent_queries
from hive.db.queries import escalations as escalation_queries
from hive.db.queries import logs
from hive.db.queries import stories as story_queries
from hive.lib.config import HiveConfig
from hive.lib.types import AgentStatus, StoryStatus
from hive.manager import monitoring

logger = logging.getLogger(__name__)

RECENT_ESCALATION_LOOKBACK_MS = 30 * 60 * 1000
INTERRUPTION_FIRST_RECOVERY_COMMAND = "continue"
INTERRUPTION_HARD_RESET_ATTEMPTS = 3

CLASSIFIER_TIMEOUT_PREFIX = "Classifier timeout"
DONE_FALSE_PREFIX = "AI done=false escalation"
RECOVERED_RESOLUTION = "Agent recovered: no longer in waiting state"

# Intervention kinds stored in monitoring.interventions
TIMEOUT_INTERVENTION = "classifier_timeout"
DONE_FALSE_INTERVENTION = "ai_done_false"

REASON_DETAIL_LIMIT = 240


@dataclass
class LadderOutcome:
    nudged: bool = False
    escalation_created: bool = False
    resolved: int = 0
    restarted: bool = False

    @property
    def acted(self) -> bool:
        return self.nudged or self.escalation_created or self.resolved > 0 or self.restarted


def _codex_permission_hint(output: str) -> str | None:
    if not re.search(r"Yes,\s*and don't ask again", output, re.IGNORECASE):
        return None
    prefix = re.search(r"commands that start with `([^`]+)`", output, re.IGNORECASE)
    if prefix:
        return f'Select option 2 ("Yes, and don\'t ask again for commands that start with `{prefix.group(1)}`").'
    return 'Select option 2 ("Yes, and don\'t ask again").'


def action_hint(state: AgentState, cli_tool: str, output: str) -> str:
    if state == AgentState.PERMISSION_REQUIRED:
        hint = _codex_permission_hint(output) if cli_tool == "codex" else None
        if hint:
            return hint
        if re.search(r"\[y/n\]|\(y/n\)|yes/no", output, re.IGNORECASE):
            return "Approve in the agent session (press y then Enter)."
        return "Approve the permission gate in the agent session."
    if state == AgentState.AWAITING_SELECTION:
        return "Choose one of the presented options in the agent session and confirm."
    if state == AgentState.ASKING_QUESTION:
        return "Answer the question in the agent session, then press Enter."
    if state == AgentState.PLAN_APPROVAL:
        return "Approve the plan prompt in the agent session so work can continue."
    if state == AgentState.USER_DECLINED:
        return "Agent is blocked after a declined prompt; re-open the session and confirm the next gate."
    return "Open the agent session and resolve the blocked prompt."


def human_approval_reason(session_name: str, waiting_reason: str | None, state: AgentState,
                          cli_tool: str, output: str) -> str:
    hint = action_hint(state, cli_tool, output)
    return f"Approval required ({cli_tool}) in {session_name}: {waiting_reason or 'Unknown question'}. Action: {hint}"


def interruption_recovery_prompt(session_name: str, story_id: str | None) -> str:
    label = story_id or "your assigned story"
    return (
        f"Manager auto-recovery: your session was interrupted. Continue {label} from your last checkpoint now. "
        "Do not reply with a status update; resume implementation immediately, run tests/validation, "
        f"then submit with: hive pr submit -b <branch> -s {story_id or '<story-id>'} --from {session_name}."
    )


def auto_recovery_reminder(session_name: str) -> str:
    return monitoring.with_nudge_envelope(
        "# The manager escalated your blocked prompt to a human.\n"
        "# Once unblocked, continue your story and check your work with:\n"
        f"# hive my-stories {session_name}"
    )


def _short(reason: str) -> str:
    single = " ".join(reason.split())
    if len(single) > REASON_DETAIL_LIMIT:
        return single[:REASON_DETAIL_LIMIT - 3] + "..."
    return single


def classifier_timeout_reason(story_id: str, detail: str) -> str:
    return (
        f"{CLASSIFIER_TIMEOUT_PREFIX}: manager completion classifier timed out for {story_id}. "
        f"Manual human intervention required. Detail: {_short(detail)}"
    )


def done_false_reason(story_id: str, detail: str) -> str:
    return (
        f"{DONE_FALSE_PREFIX}: manager AI assessment returned done=false for {story_id} after nudge limit "
        f"reached. Manual human intervention required. Detail: {_short(detail)}"
    )


def is_story_state_escalation(reason: str) -> bool:
    return reason.startswith(CLASSIFIER_TIMEOUT_PREFIX) or reason.startswith(DONE_FALSE_PREFIX)


def clear_intervention(session_name: str) -> None:
    monitoring.interventions.pop(session_name, None)


def apply_intervention_override(
    conn: sqlite3.Connection,
    session_name: str,
    story_id: str | None,
    result: StateDetectionResult,
) -> StateDetectionResult:
    """Report a session as needing a human while a story-state escalation is open for it."""
    pinned = monitoring.interventions.get(session_name, {})
    for kind in [k for k, v in pinned.items() if not story_id or v.story_id != story_id]:
        del pinned[kind]

    reason = None
    if pinned:
        reason = max(pinned.values(), key=lambda i: i.created_ms).reason
    elif story_id:
        candidates = (escalation_queries.get_active_escalations_from(conn, session_name)
                      + escalation_queries.get_pending_human_escalations(conn))
        persisted = next(
            (e for e in candidates if e["story_id"] == story_id and is_story_state_escalation(e["reason"])), None,
        )
        reason = persisted["reason"] if persisted else None

    if not reason:
        return result
    return StateDetectionResult(
        AgentState.ASKING_QUESTION, result.confidence, f"Manual intervention required: {reason}",
        is_waiting=True, needs_human=True,
    )


def _mark_intervention(
    conn: sqlite3.Connection,
    session_name: str,
    story_id: str,
    kind: str,
    reason: str,
    prefix: str,
    log_message: str,
    now: float,
) -> bool:
    """Pin an intervention and open its escalation unless one is active. Returns True if created."""
    monitoring.interventions.setdefault(session_name, {})[kind] = monitoring.Intervention(story_id, reason, now)

    created = False
    active = escalation_queries.get_active_escalations_from(conn, session_name)
    if not any(e["reason"].startswith(prefix) for e in active):
        escalation_id = escalation_queries.create_escalation(
            conn, reason, story_id=story_id, from_agent_id=session_name,
        )
        logs.create_log(conn, logs.MANAGER_ACTOR, "ESCALATION_CREATED", log_message, story_id=story_id,
                        status="error", metadata={"escalation_id": escalation_id, "session_name": session_name,
                                                  "escalation_type": kind})
        created = True

    tracked = monitoring.agent_states.get(session_name)
    if tracked is not None:
        tracked.last_state = AgentState.ASKING_QUESTION
        tracked.last_state_change_ms = now
    return created


def mark_classifier_timeout(conn: sqlite3.Connection, session_name: str, story_id: str, detail: str,
                            now: float) -> bool:
    return _mark_intervention(
        conn, session_name, story_id, TIMEOUT_INTERVENTION, classifier_timeout_reason(story_id, detail),
        CLASSIFIER_TIMEOUT_PREFIX, f"{session_name} requires human intervention: completion classifier timed out",
        now,
    )


def mark_done_false(conn: sqlite3.Connection, session_name: str, story_id: str, detail: str, now: float) -> bool:
    return _mark_intervention(
        conn, session_name, story_id, DONE_FALSE_INTERVENTION, done_false_reason(story_id, detail),
        DONE_FALSE_PREFIX,
        f"{session_name} requires human intervention: AI assessment reports blocked/incomplete after nudge limit",
        now,
    )


def _recover_interruption(conn, runtime, config: HiveConfig, session_name: str, agent,
                          result: StateDetectionResult, now: float) -> LadderOutcome:
    outcome = LadderOutcome()
    tracked = monitoring.agent_states.get(session_name)
    if tracked is not None and now - tracked.last_nudge_ms <= config.manager.nudge_cooldown_ms:
        return outcome

    story_id = agent["current_story_id"] if agent else None
    attempts = monitoring.interruption_attempts.get(session_name, 0)
    if attempts >= INTERRUPTION_HARD_RESET_ATTEMPTS:
        monitoring.interruption_attempts.pop(session_name, None)
        logs.create_log(conn, logs.MANAGER_ACTOR, "STORY_PROGRESS_UPDATE",
                        f"Auto-restarted interrupted session {session_name} after {attempts} failed recovery attempts",
                        story_id=story_id, metadata={"session_name": session_name, "attempts": attempts,
                                                     "recovery": "conversation_interrupted_restart"})
        flush(conn)
        runtime.kill(session_name)
        logger.warning(f"[escalation] Restarted {session_name}: still interrupted after {attempts} attempts")
        outcome.restarted = True
        return outcome

    prompt = INTERRUPTION_FIRST_RECOVERY_COMMAND if attempts == 0 else interruption_recovery_prompt(session_name, story_id)
    logs.create_log(conn, logs.MANAGER_ACTOR, "STORY_PROGRESS_UPDATE",
                    f"Auto-recovery message sent to interrupted session {session_name}",
                    story_id=story_id, metadata={"session_name": session_name, "attempt": attempts + 1,
                                                 "recovery": "conversation_interrupted"})
    flush(conn)
    runtime.send_text(session_name, prompt)
    runtime.send_enter(session_name)
    monitoring.interruption_attempts[session_name] = attempts + 1
    monitoring.record_nudge(session_name, result.state, now)
    outcome.nudged = True
    return outcome


def handle_escalation_and_nudge(
    conn: sqlite3.Connection,
    runtime,
    config: HiveConfig,
    session_name: str,
    agent,
    result: StateDetectionResult,
    cli_tool: str,
    output: str,
    now: float,
    escalated: set[str],
) -> LadderOutcome:
    """Run one step of the ladder for a session.

    `escalated` collects sessions escalated during this tick so a session
    is never escalated twice in one pass.
    """
    interrupted = result.state == AgentState.USER_DECLINED and is_interruption_prompt(output)
    if interrupted:
        return _recover_interruption(conn, runtime, config, session_name, agent, result, now)
    monitoring.interruption_attempts.pop(session_name, None)

    outcome = LadderOutcome()
    waiting_reason = describe_agent_state(result.state, cli_tool) if result.needs_human else None
    recent = session_name in escalated or bool(
        escalation_queries.get_recent_escalations_from(conn, session_name, ts_ago(RECENT_ESCALATION_LOOKBACK_MS))
    )

    if result.needs_human and not recent:
        story_id = agent["current_story_id"] if agent else None
        reason = human_approval_reason(session_name, waiting_reason, result.state, cli_tool, output)
        escalation_id = escalation_queries.create_escalation(
            conn, reason, story_id=story_id, from_agent_id=session_name,
        )
        logs.create_log(conn, logs.MANAGER_ACTOR, "ESCALATION_CREATED",
                        f"{session_name} requires human approval: {reason}", story_id=story_id, status="error",
                        metadata={"escalation_id": escalation_id, "session_name": session_name,
                                  "detected_state": result.state.value})
        flush(conn)
        escalated.add(session_name)
        runtime.send_text(session_name, auto_recovery_reminder(session_name))
        logger.warning(f"[escalation] {session_name} needs human input ({escalation_id})")
        outcome.escalation_created = True

    elif not result.is_waiting and not result.needs_human:
        active = escalation_queries.get_active_escalations_from(conn, session_name)
        for escalation in active:
            escalation_queries.resolve_escalation(conn, escalation["id"], RECOVERED_RESOLUTION)
        if active:
            logs.create_log(conn, logs.MANAGER_ACTOR, "ESCALATION_RESOLVED",
                            f"{session_name} recovered and manager auto-resolved {len(active)} escalation(s)",
                            metadata={"session_name": session_name, "resolved_count": len(active)})
            logger.info(f"[escalation] {session_name} recovered, resolved {len(active)} escalation(s)")
        outcome.resolved = len(active)

    elif result.is_waiting and result.state != AgentState.THINKING:
        tracked = monitoring.agent_states.get(session_name)
        if tracked is None:
            return outcome
        stuck_for = now - tracked.last_state_change_ms
        since_nudge = now - tracked.last_nudge_ms
        if stuck_for <= config.manager.stuck_threshold_ms or since_nudge <= config.manager.nudge_cooldown_ms:
            return outcome

        # Re-check right before nudging; the agent may have moved on
        flush(conn)
        recheck = detect_agent_state(runtime.capture_output(session_name, monitoring.CAPTURE_LINES), cli_tool)
        if recheck.is_waiting and not recheck.needs_human and recheck.state != AgentState.THINKING:
            monitoring.nudge_agent(runtime, session_name, agent_type=monitoring.get_agent_type(session_name),
                                   reason=waiting_reason)
            tracked.last_nudge_ms = now
            outcome.nudged = True

    return outcome


def find_stale_session_escalations(escalations, agents, live_sessions, now_ms: float,
                                   stale_after_ms: float) -> list[tuple[object, str]]:
    """Escalations whose source session or agent is gone. Returns (escalation, reason) pairs."""
    live = set(live_sessions)
    by_id = {a["id"]: a for a in agents}
    by_session = {a["tmux_session"]: a for a in agents if a["tmux_session"]}
    stale = []
    for escalation in escalations:
        source = escalation["from_agent_id"]
        if not source or source in live:
            continue
        age = age_ms(escalation["created_at"])
        if age is not None and age < stale_after_ms:
            continue

        agent = by_id.get(source) or by_session.get(source) or by_id.get(source.removeprefix("hive-"))
        if agent is None:
            stale.append((escalation, f'source session/agent "{source}" no longer exists'))
        elif agent["status"] == AgentStatus.TERMINATED.value:
            stale.append((escalation, f'source agent "{agent["id"]}" is terminated'))
        elif not ({agent["tmux_session"], f"hive-{agent['id']}", agent["id"]} & live):
            stale.append((escalation, f'source agent "{agent["id"]}" has no live tmux session'))
    return stale


def resolve_stale_escalations(conn: sqlite3.Connection, live_sessions, stale_after_ms: float) -> int:
    """Resolve escalations whose source session no longer exists."""
    stale = find_stale_session_escalations(
        escalation_queries.get_active_escalations(conn), agent_queries.get_agents(conn),
        live_sessions, monitoring.now_ms(), stale_after_ms,
    )
    for escalation, reason in stale:
        escalation_queries.resolve_escalation(conn, escalation["id"], f"Auto-resolved: {reason}")
        logs.create_log(conn, logs.MANAGER_ACTOR, "ESCALATION_RESOLVED", f"{escalation['id']}: {reason}",
                        story_id=escalation["story_id"], metadata={"escalation_id": escalation["id"]})
    return len(stale)


def find_story_state_escalations(escalations, stories_by_id: dict, live_sessions=None,
                                 min_active_age_ms: float = 0) -> list[tuple[object, str]]:
    """Story-state escalations that the story's progress has made obsolete.

    `stories_by_id` maps story id to (status, assigned session name).
    """
    live = set(live_sessions or ())
    resolutions = []
    for escalation in escalations:
        if not is_story_state_escalation(escalation["reason"]) or not escalation["story_id"]:
            continue
        story_id = escalation["story_id"]
        if story_id not in stories_by_id:
            resolutions.append((escalation, f"story {story_id} no longer exists"))
            continue

        status, session = stories_by_id[story_id]
        if status != StoryStatus.IN_PROGRESS.value:
            resolutions.append((escalation, f"story {story_id} status advanced to {status}"))
            continue
        if not session:
            resolutions.append((escalation, f"story {story_id} is in_progress but has no assigned agent session"))
            continue

        source = escalation["from_agent_id"]
        if escalation["reason"].startswith(DONE_FALSE_PREFIX) and source == session and session in live:
            age = age_ms(escalation["created_at"])
            if age is None or age >= min_active_age_ms:
                resolutions.append((escalation, f"story {story_id} is actively running in assigned session "
                                                f"{session}; pending done=false escalation is stale"))
                continue

        if source and source != session:
            resolutions.append((escalation, f"story {story_id} is assigned to {session}, "
                                            f"escalation source {source} is outdated"))
    return resolutions


def resolve_story_state_escalations(conn: sqlite3.Connection, live_sessions, min_active_age_ms: float) -> int:
    stories_by_id = {}
    for escalation in escalation_queries.get_active_escalations(conn):
        story_id = escalation["story_id"]
        if not story_id or story_id in stories_by_id:
            continue
        story = story_queries.get_story(conn, story_id)
        if story is None:
            continue
        agent = agent_queries.get_agent(conn, story["assigned_agent_id"]) if story["assigned_agent_id"] else None
        stories_by_id[story_id] = (story["status"], agent["tmux_session"] if agent else None)

    resolutions = find_story_state_escalations(
        escalation_queries.get_active_escalations(conn), stories_by_id, live_sessions, min_active_age_ms,
    )
    for escalation, reason in resolutions:
        escalation_queries.resolve_escalation(conn, escalation["id"], f"Auto-resolved: {reason}")
        logs.create_log(conn, logs.MANAGER_ACTOR, "ESCALATION_RESOLVED", f"{escalation['id']}: {reason}",
                        story_id=escalation["story_id"], metadata={"escalation_id": escalation["id"]})
        if escalation["from_agent_id"]:
            clear_intervention(escalation["from_agent_id"])
    return len(resolutions)
