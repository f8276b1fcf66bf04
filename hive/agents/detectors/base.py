"""Pattern-based agent state detection.

A detector scans the visible tail of a session for CLI-specific indicators,
highest priority first. The result is advisory: the manager combines it
with staleness tracking before acting.
"""

import re
from dataclasses import dataclass
from enum import Enum


class AgentState(str, Enum):
    # Active
    THINKING = "thinking"
    TOOL_RUNNING = "tool_running"
    PROCESSING = "processing"

    # Waiting for input
    IDLE_AT_PROMPT = "idle_at_prompt"
    WORK_COMPLETE = "work_complete"

    # Blocked on someone
    ASKING_QUESTION = "asking_question"
    AWAITING_SELECTION = "awaiting_selection"
    PLAN_APPROVAL = "plan_approval"
    PERMISSION_REQUIRED = "permission_required"
    USER_DECLINED = "user_declined"

    UNKNOWN = "unknown"


ACTIVE_STATES = frozenset({AgentState.THINKING, AgentState.TOOL_RUNNING, AgentState.PROCESSING})
WAITING_STATES = frozenset({AgentState.IDLE_AT_PROMPT, AgentState.WORK_COMPLETE})
BLOCKED_STATES = frozenset({
    AgentState.ASKING_QUESTION,
    AgentState.AWAITING_SELECTION,
    AgentState.PLAN_APPROVAL,
    AgentState.PERMISSION_REQUIRED,
    AgentState.USER_DECLINED,
})

UNKNOWN_CONFIDENCE = 0.3


@dataclass
class StateDetectionResult:
    state: AgentState
    confidence: float
    reason: str
    is_waiting: bool
    needs_human: bool


@dataclass
class StateIndicator:
    state: AgentState
    patterns: list[re.Pattern]
    priority: int


def indicator(state: AgentState, priority: int, *patterns: str, flags: int = re.IGNORECASE) -> StateIndicator:
    return StateIndicator(state, [re.compile(p, flags) for p in patterns], priority)


def result_for(state: AgentState, confidence: float, reason: str) -> StateDetectionResult:
    """Detection result with waiting/needs-human derived from the state class."""
    if state in BLOCKED_STATES:
        return StateDetectionResult(state, confidence, reason, is_waiting=True, needs_human=True)
    if state in WAITING_STATES:
        return StateDetectionResult(state, confidence, reason, is_waiting=True, needs_human=False)
    return StateDetectionResult(state, confidence, reason, is_waiting=False, needs_human=False)


class StateDetector:
    """Base detector. Subclasses provide cli_name, confidence, indicators and descriptions."""

    cli_name = "agent"
    confidence = 0.8
    indicators: list[StateIndicator] = []
    descriptions: dict[AgentState, str] = {}

    def __init__(self):
        # sorted() is stable, so equal priorities keep table order
        self._ordered = sorted(self.indicators, key=lambda i: i.priority, reverse=True)

    def detect_state(self, output: str) -> StateDetectionResult:
        for ind in self._ordered:
            for pattern in ind.patterns:
                if pattern.search(output):
                    return result_for(
                        ind.state, self.confidence,
                        f"Detected {self.cli_name} pattern for {ind.state.value}",
                    )
        return result_for(
            AgentState.UNKNOWN, UNKNOWN_CONFIDENCE, f"No clear {self.cli_name} state indicators found",
        )

    def state_description(self, state: AgentState) -> str:
        return self.descriptions.get(state, "Unknown state")
