"""Tests for agent state detection."""

import pytest

from hive.agents.detectors import (
    AgentState,
    describe_agent_state,
    detect_agent_state,
    get_state_detector,
)
from hive.agents.detectors.claude import ClaudeDetector


class TestCrossCliPrechecks:

    def test_interruption_needs_human(self):
        result = detect_agent_state(
            "Conversation interrupted - tell the model what to do differently", "codex",
        )
        assert result.state == AgentState.USER_DECLINED
        assert result.is_waiting
        assert result.needs_human

    def test_rate_limit_does_not_need_human(self):
        result = detect_agent_state("Error: 429 Too Many Requests", "claude")
        assert result.state == AgentState.USER_DECLINED
        assert result.is_waiting
        assert not result.needs_human

    def test_rate_limit_needs_context_and_retry(self):
        assert detect_agent_state("Hit the quota, will retry after 30s", "gemini").state == AgentState.USER_DECLINED
        assert detect_agent_state("Checked the quota config", "claude").state != AgentState.USER_DECLINED

    def test_prompt_without_question_is_idle(self):
        output = "Edited 3 files\n› Write tests for @filename\n\n  ? for shortcuts"
        result = detect_agent_state(output, "codex")
        assert result.state == AgentState.IDLE_AT_PROMPT
        assert not result.needs_human

    def test_prompt_with_question_needs_human(self):
        output = "› Should I continue with the migration?\n  ? for shortcuts"
        result = detect_agent_state(output, "codex")
        assert result.state == AgentState.ASKING_QUESTION
        assert result.needs_human

    def test_prompt_line_without_ui_signal_falls_through(self):
        result = detect_agent_state("> run the build", "claude")
        assert "interactive" not in result.reason
        assert result.state == AgentState.UNKNOWN


class TestClaudeDetector:

    @pytest.mark.parametrize("output,state", [
        ("✻ Pondering (thinking)", AgentState.THINKING),
        ("Bash(npm test) esc to interrupt", AgentState.TOOL_RUNNING),
        ("Would you like to proceed with this plan", AgentState.PLAN_APPROVAL),
        ("Allow this command? [y/n]", AgentState.PERMISSION_REQUIRED),
        ("User chose not to continue", AgentState.USER_DECLINED),
        ("All 12 tests passed", AgentState.WORK_COMPLETE),
        ("output\n>\n", AgentState.IDLE_AT_PROMPT),
        ("", AgentState.UNKNOWN),
    ])
    def test_states(self, output, state):
        assert detect_agent_state(output, "claude").state == state

    def test_blocked_states_need_human(self):
        result = detect_agent_state("Allow this command? [y/n]", "claude")
        assert result.is_waiting
        assert result.needs_human
        assert result.confidence == ClaudeDetector.confidence

    def test_active_states_are_not_waiting(self):
        result = detect_agent_state("✻ Pondering (thinking)", "claude")
        assert not result.is_waiting
        assert not result.needs_human

    def test_unknown_has_low_confidence(self):
        assert detect_agent_state("", "claude").confidence == 0.3


class TestOtherClis:

    def test_codex_command_approval(self):
        result = detect_agent_state("Would you like to run the following command?", "codex")
        assert result.state == AgentState.PERMISSION_REQUIRED

    def test_codex_idle_prompt(self):
        assert detect_agent_state("codex>", "codex").state == AgentState.IDLE_AT_PROMPT

    def test_gemini_description(self):
        assert describe_agent_state(AgentState.PLAN_APPROVAL, "gemini") == "Gemini: plan approval"

    def test_claude_description(self):
        assert describe_agent_state(AgentState.ASKING_QUESTION, "claude") == "Asking a question - needs response"

    def test_unknown_cli_uses_claude(self):
        assert isinstance(get_state_detector("cursor"), ClaudeDetector)
