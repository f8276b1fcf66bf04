"""
Per-session observation state for the manager loop.

Trackers live in module-level dicts keyed by session name and are pruned
against the live session list every tick, so a session that disappears
takes its history with it.
"""

import hashlib
import logging
import re
import time
from dataclasses import dataclass

from hive.agents import completion
from hive.agents.detectors import AgentState, StateDetectionResult
from hive.lib.config import HiveConfig

logger = logging.getLogger(__name__)

CAPTURE_LINES = 50
CAPTURE_LINES_SHORT = 30
BYPASS_MODE_MAX_RETRIES = 3
BYPASS_POLL_SECONDS = 0.3
SCREEN_STATIC_AI_RECHECK_MS = 5 * 60 * 1000

NUDGE_START_MARKER = "[HIVE_MANAGER_NUDGE_START]"
NUDGE_END_MARKER = "[HIVE_MANAGER_NUDGE_END]"

_PROMPT_PREFIX = re.compile(r"^\s*(?:›|>)\s*")
_BYPASS_ON = re.compile(r"bypass permissions on", re.IGNORECASE)
_BYPASS_NEEDED = re.compile(r"plan mode on|safe mode on|permission.*required|approve.*\[y/n\]", re.IGNORECASE)


@dataclass
class AgentTracking:
    last_state: AgentState
    last_state_change_ms: float
    last_nudge_ms: float = 0.0
    stuck_nudges: int = 0


@dataclass
class ScreenStatic:
    fingerprint: str
    unchanged_since_ms: float
    last_ai_assessment_ms: float = 0.0


@dataclass
class ScreenStaticStatus:
    changed: bool
    unchanged_for_ms: float
    should_run_ai: bool


@dataclass
class Intervention:
    """A human-intervention marker pinned to a session's current story."""
    story_id: str
    reason: str
    created_ms: float


agent_states: dict[str, AgentTracking] = {}
screen_static: dict[str, ScreenStatic] = {}
interruption_attempts: dict[str, int] = {}
# Keyed by session, one slot per intervention kind
interventions: dict[str, dict[str, Intervention]] = {}


def now_ms() -> float:
    return time.time() * 1000


def prune_trackers(live_sessions) -> None:
    """Drop tracking for sessions that no longer exist."""
    live = set(live_sessions)
    for tracker in (agent_states, screen_static, interruption_attempts, interventions):
        for name in [n for n in tracker if n not in live]:
            del tracker[name]
    completion.prune_cache(live)


def reset_trackers() -> None:
    for tracker in (agent_states, screen_static, interruption_attempts, interventions):
        tracker.clear()


def get_agent_type(session_name: str) -> str:
    for agent_type in ("senior", "intermediate", "junior", "qa"):
        if f"-{agent_type}-" in f"{session_name}-":
            return agent_type
    return "unknown"


def with_nudge_envelope(message: str) -> str:
    return f"# {NUDGE_START_MARKER}\n{message}\n# {NUDGE_END_MARKER}"


def strip_nudge_blocks(output: str) -> str:
    """Remove manager-authored nudge blocks so they don't count as agent activity."""
    kept = []
    inside = False
    for line in output.split("\n"):
        normalized = _PROMPT_PREFIX.sub("", line).strip()
        if NUDGE_START_MARKER in normalized:
            inside = True
            continue
        if NUDGE_END_MARKER in normalized:
            inside = False
            continue
        if not inside:
            kept.append(line)
    return "\n".join(kept)


def output_fingerprint(output: str) -> str:
    return hashlib.sha256(strip_nudge_blocks(output).encode()).hexdigest()


def track(session_name: str, state: AgentState, now: float) -> AgentTracking:
    """Tracking entry for a session, created on first sight."""
    tracked = agent_states.get(session_name)
    if tracked is None:
        tracked = AgentTracking(last_state=state, last_state_change_ms=now)
        agent_states[session_name] = tracked
    return tracked


def update_state_tracking(session_name: str, result: StateDetectionResult, now: float) -> AgentTracking:
    tracked = agent_states.get(session_name)
    if tracked is None:
        return track(session_name, result.state, now)
    if tracked.last_state != result.state:
        tracked.last_state = result.state
        tracked.last_state_change_ms = now
    return tracked


def record_nudge(session_name: str, state: AgentState, now: float, stuck: bool = False) -> None:
    tracked = track(session_name, state, now)
    tracked.last_nudge_ms = now
    if stuck:
        tracked.stuck_nudges += 1


def reset_stuck_nudges(session_name: str) -> None:
    tracked = agent_states.get(session_name)
    if tracked is not None:
        tracked.stuck_nudges = 0


def update_screen_static(session_name: str, output: str, now: float, threshold_ms: int) -> ScreenStaticStatus:
    """Track how long a session's screen has been unchanged."""
    fingerprint = output_fingerprint(output)
    tracking = screen_static.get(session_name)
    changed = tracking is None or tracking.fingerprint != fingerprint
    if changed:
        tracking = ScreenStatic(fingerprint=fingerprint, unchanged_since_ms=now)
        screen_static[session_name] = tracking

    unchanged_for = now - tracking.unchanged_since_ms
    should_run_ai = unchanged_for >= max(1, threshold_ms) and (
        tracking.last_ai_assessment_ms == 0
        or now - tracking.last_ai_assessment_ms >= SCREEN_STATIC_AI_RECHECK_MS
    )
    return ScreenStaticStatus(changed=changed, unchanged_for_ms=unchanged_for, should_run_ai=should_run_ai)


def mark_ai_assessment(session_name: str, now: float) -> None:
    tracking = screen_static.get(session_name)
    if tracking is not None:
        tracking.last_ai_assessment_ms = now


def static_unchanged_for(session_name: str, now: float) -> float:
    tracking = screen_static.get(session_name)
    if tracking is None:
        return 0.0
    return max(0.0, now - tracking.unchanged_since_ms)


def format_duration(ms: float) -> str:
    if ms <= 0:
        return "now"
    total = int(-(-ms // 1000))
    minutes, seconds = divmod(total, 60)
    return f"{minutes}m {seconds}s" if minutes else f"{seconds}s"


def safety_mode_for(config: HiveConfig, agent) -> str:
    if agent is None:
        return "unsafe"
    return config.model_for(agent["type"]).safety_mode


def role_nudge(agent_type: str, session_name: str) -> str:
    if agent_type == "qa":
        return (
            "# You are a QA agent. Check for PRs to review:\n"
            "# hive pr queue\n"
            "# If there are PRs, review them with: hive pr review <pr-id>"
        )
    if agent_type == "senior":
        return (
            "# You are a Senior developer. Continue with your assigned stories.\n"
            f"# Check your work: hive my-stories {session_name}\n"
            "# If no active stories, check for available work: hive stories list --status planned"
        )
    if agent_type in ("intermediate", "junior"):
        return (
            "# Continue with your assigned story. Check status:\n"
            f"# hive my-stories {session_name}\n"
            '# If stuck, ask your Senior for help via: hive msg send hive-senior-<team> "your question"\n'
            f"# If done, submit PR: hive pr submit -b <branch> -s <story-id> --from {session_name}"
        )
    return "# Check current status and continue working:\nhive status"


def nudge_agent(
    runtime,
    session_name: str,
    message: str | None = None,
    agent_type: str | None = None,
    reason: str | None = None,
) -> None:
    """Send a role-appropriate nudge, or `message` verbatim, inside the manager envelope."""
    if message:
        runtime.send_text(session_name, with_nudge_envelope(message))
        return

    nudge = role_nudge(agent_type or get_agent_type(session_name), session_name)
    if reason:
        nudge = f"# Manager detected: {reason}\n{nudge}"
    runtime.send_text(session_name, with_nudge_envelope(nudge))
    runtime.send_enter(session_name)


def forward_messages(runtime, session_name: str, messages) -> int:
    """Deliver pending mailbox messages to a session. Returns the count sent."""
    sent = 0
    for msg in messages:
        subject = f" - {msg['subject']}" if msg["subject"] else ""
        notification = (
            f"# New message from {msg['from_session']}{subject}\n"
            f"# {msg['body']}\n"
            f'# Reply with: hive msg reply {msg["id"]} "your response" --from {session_name}'
        )
        if not runtime.send_text(session_name, notification):
            logger.warning(f"[monitor] Failed to deliver {msg['id']} to {session_name}")
        sent += 1
    return sent


def force_bypass_mode(runtime, session_name: str, cli_tool: str, max_retries: int = BYPASS_MODE_MAX_RETRIES) -> bool:
    """Cycle a Claude session's permission mode until bypass is on."""
    if cli_tool != "claude":
        return False
    for _ in range(max_retries):
        runtime.send_keys(session_name, "BTab")
        time.sleep(BYPASS_POLL_SECONDS)
        if _BYPASS_ON.search(runtime.capture_output(session_name, CAPTURE_LINES_SHORT)):
            return True
    return False


def enforce_bypass_mode(runtime, session_name: str, output: str, cli_tool: str, safety_mode: str) -> bool | None:
    """Restore bypass mode on unsafe tiers that drifted into a gated mode.

    Returns None when nothing needed doing.
    """
    if safety_mode == "safe" or not _BYPASS_NEEDED.search(output):
        return None
    enforced = force_bypass_mode(runtime, session_name, cli_tool)
    if enforced:
        logger.info(f"[monitor] Enforced bypass mode on {session_name}")
    else:
        logger.warning(f"[monitor] Failed to enforce bypass mode on {session_name}")
    return enforced


def auto_approve_permission(runtime, session_name: str) -> bool:
    return runtime.send_keys(session_name, "y", "Enter")


def handle_plan_approval(runtime, session_name: str, result: StateDetectionResult, now: float,
                         cli_tool: str, safety_mode: str) -> bool:
    """Cycle unsafe agents out of plan mode instead of waiting for a human."""
    if result.state != AgentState.PLAN_APPROVAL or safety_mode != "unsafe":
        return False
    if not force_bypass_mode(runtime, session_name, cli_tool):
        return False
    logger.info(f"[monitor] Bypass mode restored: {session_name} cycled out of plan mode")
    tracked = agent_states.get(session_name)
    if tracked is not None:
        tracked.last_state = AgentState.IDLE_AT_PROMPT
        tracked.last_state_change_ms = now
    return True
