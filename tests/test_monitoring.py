"""Tests for per-session tracking and agent-facing messages."""

import pytest

from hive.agents import completion
from hive.agents.detectors import AgentState, StateDetectionResult
from hive.manager import monitoring
from hive.manager.monitoring import (
    NUDGE_END_MARKER,
    NUDGE_START_MARKER,
    enforce_bypass_mode,
    force_bypass_mode,
    format_duration,
    forward_messages,
    get_agent_type,
    handle_plan_approval,
    nudge_agent,
    output_fingerprint,
    prune_trackers,
    record_nudge,
    reset_stuck_nudges,
    strip_nudge_blocks,
    update_screen_static,
    update_state_tracking,
    with_nudge_envelope,
)


def detection(state, waiting=True, human=False):
    return StateDetectionResult(state, 0.9, "test", is_waiting=waiting, needs_human=human)


@pytest.fixture
def no_sleep(monkeypatch):
    monkeypatch.setattr(monitoring.time, "sleep", lambda seconds: None)


class TestSessionNames:

    @pytest.mark.parametrize("session,agent_type", [
        ("hive-junior-alpha", "junior"),
        ("hive-senior-alpha-2", "senior"),
        ("hive-intermediate", "intermediate"),
        ("hive-qa-alpha", "qa"),
        ("hive-manager", "unknown"),
    ])
    def test_agent_type(self, session, agent_type):
        assert get_agent_type(session) == agent_type


class TestNudgeEnvelope:

    def test_strip_removes_manager_blocks(self):
        output = "\n".join([
            "agent line 1",
            f"> # {NUDGE_START_MARKER}",
            "# Continue with your story",
            f"# {NUDGE_END_MARKER}",
            "agent line 2",
        ])
        assert strip_nudge_blocks(output) == "agent line 1\nagent line 2"

    def test_fingerprint_ignores_nudges(self):
        base = "working on parser"
        assert output_fingerprint(base) == output_fingerprint(base + "\n" + with_nudge_envelope("# hello"))
        assert output_fingerprint(base) != output_fingerprint(base + "\nmore")


class TestScreenStatic:

    def test_unchanged_screen_triggers_ai_once(self):
        first = update_screen_static("s", "same", 0, threshold_ms=1000)
        assert first.changed
        assert not first.should_run_ai

        later = update_screen_static("s", "same", 1000, threshold_ms=1000)
        assert not later.changed
        assert later.unchanged_for_ms == 1000
        assert later.should_run_ai

        monitoring.mark_ai_assessment("s", 1000)
        assert not update_screen_static("s", "same", 2000, threshold_ms=1000).should_run_ai
        assert update_screen_static(
            "s", "same", 1000 + monitoring.SCREEN_STATIC_AI_RECHECK_MS, threshold_ms=1000,
        ).should_run_ai

    def test_change_resets(self):
        update_screen_static("s", "one", 0, threshold_ms=1000)
        status = update_screen_static("s", "two", 5000, threshold_ms=1000)
        assert status.changed
        assert status.unchanged_for_ms == 0
        assert monitoring.static_unchanged_for("s", 6000) == 1000


class TestStateTracking:

    def test_state_change_time(self):
        update_state_tracking("s", detection(AgentState.THINKING, waiting=False), 100)
        tracked = update_state_tracking("s", detection(AgentState.THINKING, waiting=False), 500)
        assert tracked.last_state_change_ms == 100
        tracked = update_state_tracking("s", detection(AgentState.IDLE_AT_PROMPT), 900)
        assert tracked.last_state == AgentState.IDLE_AT_PROMPT
        assert tracked.last_state_change_ms == 900

    def test_stuck_nudge_counter(self):
        record_nudge("s", AgentState.IDLE_AT_PROMPT, 100, stuck=True)
        record_nudge("s", AgentState.IDLE_AT_PROMPT, 200)
        tracked = monitoring.agent_states["s"]
        assert tracked.stuck_nudges == 1
        assert tracked.last_nudge_ms == 200
        reset_stuck_nudges("s")
        assert tracked.stuck_nudges == 0

    def test_prune(self):
        record_nudge("gone", AgentState.IDLE_AT_PROMPT, 0)
        record_nudge("live", AgentState.IDLE_AT_PROMPT, 0)
        update_screen_static("gone", "x", 0, 1000)
        monitoring.interruption_attempts["gone"] = 2
        completion._cache["gone:STORY-1"] = completion._CacheEntry(float("inf"), "f", None)
        prune_trackers(["live"])
        assert set(monitoring.agent_states) == {"live"}
        assert monitoring.screen_static == {}
        assert monitoring.interruption_attempts == {}
        assert completion._cache == {}


@pytest.mark.parametrize("ms,text", [(0, "now"), (1500, "2s"), (61000, "1m 1s"), (120000, "2m 0s")])
def test_format_duration(ms, text):
    assert format_duration(ms) == text


class TestAgentMessages:

    def test_custom_nudge_has_no_enter(self, runtime):
        nudge_agent(runtime, "hive-junior-alpha", message="please submit")
        assert runtime.sent == [("hive-junior-alpha", with_nudge_envelope("please submit"))]
        assert runtime.enters == []

    def test_role_nudge(self, runtime):
        nudge_agent(runtime, "hive-junior-alpha", reason="Idle at prompt")
        text = runtime.texts_to("hive-junior-alpha")[0]
        assert "# Manager detected: Idle at prompt" in text
        assert "hive my-stories hive-junior-alpha" in text
        assert runtime.enters == ["hive-junior-alpha"]

    def test_qa_nudge(self, runtime):
        nudge_agent(runtime, "hive-qa-alpha")
        assert "hive pr queue" in runtime.texts_to("hive-qa-alpha")[0]

    def test_forward_messages(self, runtime):
        messages = [
            {"id": "MSG-1", "from_session": "hive-senior-alpha", "subject": "API", "body": "use v2"},
            {"id": "MSG-2", "from_session": "hive-qa-alpha", "subject": None, "body": "ping"},
        ]
        assert forward_messages(runtime, "hive-junior-alpha", messages) == 2
        first, second = runtime.texts_to("hive-junior-alpha")
        assert first.startswith("# New message from hive-senior-alpha - API")
        assert "hive msg reply MSG-1" in first
        assert second.startswith("# New message from hive-qa-alpha\n")


class TestBypassMode:

    def test_cycles_until_bypass(self, runtime, no_sleep):
        runtime.outputs["s"] = "⏵⏵ bypass permissions on"
        assert force_bypass_mode(runtime, "s", "claude")
        assert runtime.keys == [("s", ("BTab",))]

    def test_gives_up(self, runtime, no_sleep):
        runtime.outputs["s"] = "plan mode on"
        assert not force_bypass_mode(runtime, "s", "claude")
        assert len(runtime.keys) == monitoring.BYPASS_MODE_MAX_RETRIES

    def test_only_claude(self, runtime, no_sleep):
        runtime.outputs["s"] = ""
        assert not force_bypass_mode(runtime, "s", "codex")
        assert runtime.keys == []

    def test_enforce_skips_safe_and_clean_sessions(self, runtime, no_sleep):
        runtime.outputs["s"] = "bypass permissions on"
        assert enforce_bypass_mode(runtime, "s", "plan mode on", "claude", "safe") is None
        assert enforce_bypass_mode(runtime, "s", "all good", "claude", "unsafe") is None
        assert enforce_bypass_mode(runtime, "s", "plan mode on", "claude", "unsafe") is True

    def test_plan_approval_cycles_out(self, runtime, no_sleep):
        runtime.outputs["s"] = "bypass permissions on"
        update_state_tracking("s", detection(AgentState.PLAN_APPROVAL, human=True), 0)
        assert handle_plan_approval(runtime, "s", detection(AgentState.PLAN_APPROVAL, human=True), 50,
                                    "claude", "unsafe")
        assert monitoring.agent_states["s"].last_state == AgentState.IDLE_AT_PROMPT

    def test_plan_approval_left_for_safe_agents(self, runtime, no_sleep):
        runtime.outputs["s"] = "bypass permissions on"
        assert not handle_plan_approval(runtime, "s", detection(AgentState.PLAN_APPROVAL, human=True), 50,
                                        "claude", "safe")
