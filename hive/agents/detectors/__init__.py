"""
Agent state detection across CLI tools.

detect_agent_state() runs cross-CLI pre-checks (interruption banners,
rate limiting, interactive prompts) before falling through to the
CLI-specific pattern detector. Pre-checks win because stale "working"
text often lingers in pane history above the real prompt.
"""

import re

from hive.agents.detectors.base import (
    ACTIVE_STATES,
    BLOCKED_STATES,
    WAITING_STATES,
    AgentState,
    StateDetectionResult,
    StateDetector,
)
from hive.agents.detectors.claude import ClaudeDetector
from hive.agents.detectors.codex import CodexDetector
from hive.agents.detectors.gemini import GeminiDetector

__all__ = [
    "ACTIVE_STATES",
    "BLOCKED_STATES",
    "WAITING_STATES",
    "AgentState",
    "StateDetectionResult",
    "describe_agent_state",
    "detect_agent_state",
    "get_state_detector",
]

RATE_LIMIT_WINDOW_LINES = 120
INTERACTIVE_PROMPT_WINDOW_LINES = 80

INTERRUPTION_PATTERN = re.compile(
    r"conversation interrupted|tell the model what to do differently"
    r"|hit [`'\"]?/feedback[`'\"]? to report the issue",
    re.IGNORECASE,
)

RATE_LIMIT_HARD_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"too many requests",
    r"rate_limit_error",
    r"resource[_\s-]?exhausted",
    r"request(?:\s+has\s+been)?\s+throttled",
    r"rate[\s_-]?limit(?:\s+reached|\s+exceeded)",
    r"(?:status|error|code)\s*[:=]?\s*429\b",
    r"\b429\b.*(?:too many requests|rate[\s_-]?limit|throttl|quota|retry)",
)]

RATE_LIMIT_CONTEXT_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"\b429\b",
    r"rate[\s_-]?limit",
    r"quota",
    r"resource[_\s-]?exhausted",
    r"throttl",
    r"requests?\s+per\s+(?:min|minute)",
    r"tokens?\s+per\s+(?:min|minute)",
    r"\b(?:rpm|tpm)\b",
)]

RATE_LIMIT_RETRY_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"retry after",
    r"exceeded retry limit",
    r"try again",
    r"backoff",
)]

PROMPT_LINE_PATTERN = re.compile(r"^\s*(?:›|>)\s+\S.+$", re.MULTILINE)
PROMPT_PREFIX_PATTERN = re.compile(r"^\s*(?:›|>)\s*")

PROMPT_UI_SIGNAL_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"\?\s*for shortcuts",
    r"\bcontext left\b",
    r"\[pasted content\s+\d+\s+chars\]",
)]

PROMPT_QUESTION_PATTERNS = [
    re.compile(r"\?\s*$"),
    re.compile(r"\b(?:choose|select|pick)\b", re.IGNORECASE),
    re.compile(r"\b(?:confirm|approve|deny)\b", re.IGNORECASE),
    re.compile(r"\b(?:yes|no|y/n)\b", re.IGNORECASE),
]

_DETECTORS: dict[str, StateDetector] = {
    "claude": ClaudeDetector(),
    "codex": CodexDetector(),
    "gemini": GeminiDetector(),
}


def get_state_detector(cli_tool: str) -> StateDetector:
    """Detector for a CLI tool; unknown tools use the Claude detector."""
    return _DETECTORS.get(cli_tool) or _DETECTORS["claude"]


def _tail(output: str, lines: int) -> str:
    return "\n".join(output.split("\n")[-lines:])


def is_interruption_prompt(output: str) -> bool:
    return bool(INTERRUPTION_PATTERN.search(output))


def is_rate_limit_prompt(output: str) -> bool:
    recent = _tail(output, RATE_LIMIT_WINDOW_LINES)
    if any(p.search(recent) for p in RATE_LIMIT_HARD_PATTERNS):
        return True
    has_context = any(p.search(recent) for p in RATE_LIMIT_CONTEXT_PATTERNS)
    has_retry = any(p.search(recent) for p in RATE_LIMIT_RETRY_PATTERNS)
    return has_context and has_retry


def is_interactive_prompt(output: str) -> bool:
    recent = _tail(output, INTERACTIVE_PROMPT_WINDOW_LINES)
    if not PROMPT_LINE_PATTERN.search(recent):
        return False
    return any(p.search(recent) for p in PROMPT_UI_SIGNAL_PATTERNS)


def _latest_prompt_line(output: str) -> str | None:
    recent = _tail(output, INTERACTIVE_PROMPT_WINDOW_LINES)
    for line in reversed(recent.split("\n")):
        if PROMPT_LINE_PATTERN.search(line):
            return line.strip()
    return None


def _prompt_is_question(output: str) -> bool:
    line = _latest_prompt_line(output)
    if not line:
        return False
    text = PROMPT_PREFIX_PATTERN.sub("", line)
    return any(p.search(text) for p in PROMPT_QUESTION_PATTERNS)


def detect_agent_state(output: str, cli_tool: str) -> StateDetectionResult:
    """Classify a session's visible output into an AgentState."""
    if is_interruption_prompt(output):
        return StateDetectionResult(
            AgentState.USER_DECLINED, 0.9, f"Detected {cli_tool} interruption prompt",
            is_waiting=True, needs_human=True,
        )

    # Throttling clears on its own; it must not open an escalation
    if is_rate_limit_prompt(output):
        return StateDetectionResult(
            AgentState.USER_DECLINED, 0.85, f"Detected {cli_tool} rate-limit prompt",
            is_waiting=True, needs_human=False,
        )

    if is_interactive_prompt(output):
        question = _prompt_is_question(output)
        kind = "question" if question else "idle"
        return StateDetectionResult(
            AgentState.ASKING_QUESTION if question else AgentState.IDLE_AT_PROMPT,
            0.9,
            f"Detected {cli_tool} interactive input prompt ({kind})",
            is_waiting=True,
            needs_human=question,
        )

    return get_state_detector(cli_tool).detect_state(output)


def describe_agent_state(state: AgentState, cli_tool: str) -> str:
    return get_state_detector(cli_tool).state_description(state)
