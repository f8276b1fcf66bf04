"""Claude Code terminal state detector."""

import re

from hive.agents.detectors.base import AgentState, StateDetector, indicator


class ClaudeDetector(StateDetector):
    cli_name = "claude"
    confidence = 0.9

    indicators = [
        indicator(AgentState.THINKING, 100, r"\(thinking\)", r"Concocting|Twisting|Considering|Analyzing"),
        indicator(AgentState.TOOL_RUNNING, 100, r"esc to interrupt", r"Running|Executing", r"\[.*\]\s+\d+%"),
        indicator(AgentState.PROCESSING, 90, r"Processing|Analyzing|Generating", r"Please wait"),
        indicator(AgentState.AWAITING_SELECTION, 90, r"Enter to select.*↑/↓", r"Use arrows to navigate",
                  r"Select an option"),
        indicator(AgentState.ASKING_QUESTION, 85, r"\?\s*$", r"Please (choose|select|confirm)",
                  r"Would you like to", r"Do you want to", flags=re.IGNORECASE | re.MULTILINE),
        indicator(AgentState.PLAN_APPROVAL, 90, r"approve.*plan", r"review.*plan", r"proceed.*plan",
                  r"ExitPlanMode"),
        indicator(AgentState.PERMISSION_REQUIRED, 90, r"permission.*required", r"authorize",
                  r"Allow.*\[y/n\]", r"Approve.*\[y/n\]"),
        indicator(AgentState.USER_DECLINED, 85, r"declined", r"permission denied", r"User chose not to"),
        indicator(AgentState.WORK_COMPLETE, 50, r"done|complete|finished", r"successfully",
                  r"All.*tests passed"),
        indicator(AgentState.IDLE_AT_PROMPT, 40, r"^>\s*$", r"Ready for input", r"What would you like",
                  flags=re.IGNORECASE | re.MULTILINE),
    ]

    descriptions = {
        AgentState.THINKING: "Claude is thinking",
        AgentState.TOOL_RUNNING: "A tool is running",
        AgentState.PROCESSING: "Processing request",
        AgentState.IDLE_AT_PROMPT: "Idle at prompt",
        AgentState.WORK_COMPLETE: "Work completed",
        AgentState.ASKING_QUESTION: "Asking a question - needs response",
        AgentState.AWAITING_SELECTION: "Awaiting user selection",
        AgentState.PLAN_APPROVAL: "Waiting for plan approval",
        AgentState.PERMISSION_REQUIRED: "Permission required",
        AgentState.USER_DECLINED: "User declined - blocked",
        AgentState.UNKNOWN: "Unknown state",
    }
