"""Codex CLI terminal state detector."""

import re

from hive.agents.detectors.base import AgentState, StateDetector, indicator


class CodexDetector(StateDetector):
    cli_name = "codex"
    confidence = 0.85

    indicators = [
        indicator(AgentState.THINKING, 100, r"thinking\.\.\.", r"analyzing|considering", r"generating response"),
        indicator(AgentState.TOOL_RUNNING, 100, r"executing", r"running command", r"\[\s*=+\s*\]",
                  r"\d+%\s*complete"),
        indicator(AgentState.PROCESSING, 90, r"processing", r"loading", r"working"),
        indicator(AgentState.AWAITING_SELECTION, 90, r"select an option", r"choose from the following",
                  r"\[1-9\]"),
        indicator(AgentState.ASKING_QUESTION, 85, r"\?\s*$", r"please confirm", r"do you want", r"would you like",
                  flags=re.IGNORECASE | re.MULTILINE),
        indicator(AgentState.PERMISSION_REQUIRED, 90, r"permission required", r"authorization needed",
                  r"\[y/n\]", r"approve", r"Would you like to run the following command\?",
                  r"Yes,\s*proceed\s*\(y\)", r"Press enter to confirm"),
        indicator(AgentState.USER_DECLINED, 85, r"declined", r"denied", r"cancelled", r"aborted"),
        indicator(AgentState.WORK_COMPLETE, 50, r"done", r"completed", r"finished", r"success"),
        indicator(AgentState.IDLE_AT_PROMPT, 40, r"^>\s*$", r"^codex>\s*$", r"waiting for input",
                  flags=re.IGNORECASE | re.MULTILINE),
    ]

    descriptions = {
        AgentState.THINKING: "Codex is thinking",
        AgentState.TOOL_RUNNING: "Running command",
        AgentState.PROCESSING: "Processing request",
        AgentState.IDLE_AT_PROMPT: "Idle at prompt",
        AgentState.WORK_COMPLETE: "Work completed",
        AgentState.ASKING_QUESTION: "Asking a question - needs response",
        AgentState.AWAITING_SELECTION: "Awaiting user selection",
        AgentState.PLAN_APPROVAL: "Waiting for approval",
        AgentState.PERMISSION_REQUIRED: "Permission required",
        AgentState.USER_DECLINED: "User declined - blocked",
        AgentState.UNKNOWN: "Unknown state",
    }
