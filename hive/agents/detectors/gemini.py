"""Gemini CLI terminal state detector."""

import re

from hive.agents.detectors.base import AgentState, StateDetector, indicator


class GeminiDetector(StateDetector):
    cli_name = "gemini"
    confidence = 0.7

    indicators = [
        indicator(AgentState.THINKING, 100, r"thinking", r"analyzing", r"\.\.\."),
        indicator(AgentState.TOOL_RUNNING, 100, r"running|executing", r"function call"),
        indicator(AgentState.PROCESSING, 90, r"processing", r"generating"),
        indicator(AgentState.AWAITING_SELECTION, 90, r"select.*option", r"choose"),
        indicator(AgentState.ASKING_QUESTION, 85, r"\?\s*$", r"confirm", flags=re.IGNORECASE | re.MULTILINE),
        indicator(AgentState.PERMISSION_REQUIRED, 90, r"permission", r"authorize"),
        indicator(AgentState.WORK_COMPLETE, 50, r"complete|done", r"success"),
        indicator(AgentState.IDLE_AT_PROMPT, 40, r"^>\s*$", r"^gemini>", r"ready",
                  flags=re.IGNORECASE | re.MULTILINE),
    ]

    def state_description(self, state: AgentState) -> str:
        return f"Gemini: {state.value.replace('_', ' ')}"
