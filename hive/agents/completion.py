"""
Completion intelligence for stalled agent sessions.

When a session has sat unchanged for a long time, the manager asks
whether the agent actually finished its story and is looping on the
PR-submission step. A cheap heuristic runs first, then a local CLI
classifier gives a semantic verdict. Verdicts are cached per
session/story for a few minutes and keyed on an output fingerprint.
"""

import hashlib
import json
import logging
import re
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass, replace
from pathlib import Path

from hive.lib.config import ClassifierConfig
from hive.lib.validate import ValidationError, extract_json_object, load_schema

logger = logging.getLogger(__name__)

ANALYSIS_WINDOW_LINES = 180
CACHE_TTL_SECONDS = 5 * 60

CANDIDATE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"worked for \d+",
    r"testing:\s*(?:not run|pass|fail)",
    r"next steps:",
    r"implementation complete",
    r"ready for review",
    r"summary",
    r"pull request|pr submitted",
    r"all requested code changes.*(?:done|complete|finished)",
    r"(?:implementation|templates?|tests?).*(?:done|complete|finished)",
    r"pending.*(?:pr submission|submit(?:ting)? (?:a )?pr)",
    r"(?:story|task).*(?:still|remains)\s+in[_ -]?progress.*(?:done|complete|ready)",
)]

NON_COMPLETION_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"if stuck",
    r"need help",
    r"blocked",
    r"awaiting",
    r"cannot proceed",
    r"no other work can proceed",
    r"missing .*proto",
    r"waiting for .*files?",
    r"needs? .*restored",
    r"\b(?:choose|select|approve|deny)\b",
)] + [re.compile(r"\?\s*$")]

DONE_LOCALLY_PATTERN = re.compile(
    r"(?:implementation|code changes|requested changes).*(?:done|complete|finished)", re.IGNORECASE,
)
PENDING_SUBMIT_PATTERN = re.compile(
    r"pending.*(?:pr submission|submit(?:ting)? (?:a )?pr)|next.*(?:hive pr submit|mark .*complete)",
    re.IGNORECASE,
)
CLASSIFIER_TIMEOUT_PATTERN = re.compile(
    r"local classifier unavailable:.*timed out|command timed out", re.IGNORECASE,
)

UNPARSEABLE_REASON = "Could not parse local CLI classifier response as JSON"

CLASSIFIER_SYSTEM_PROMPT = (
    "You are a strict classifier for engineering agent terminal output. "
    "Decide if the agent has already finished implementation and is now at post-work summary state. "
    "Return JSON only."
)


class ClassifierError(Exception):
    """The local classifier CLI could not produce an answer."""


@dataclass
class CompletionAssessment:
    done: bool
    confidence: float
    reason: str
    used_ai: bool


@dataclass
class _CacheEntry:
    expires_at: float
    fingerprint: str
    assessment: CompletionAssessment


_cache: dict[str, _CacheEntry] = {}


def clear_cache() -> None:
    _cache.clear()


def prune_cache(live_sessions, now: float | None = None) -> None:
    """Drop cached assessments for dead sessions and expired entries."""
    now = time.time() if now is None else now
    live = set(live_sessions)
    for key in [k for k, entry in _cache.items() if k.split(":", 1)[0] not in live or entry.expires_at <= now]:
        del _cache[key]


def _recent(output: str) -> str:
    return "\n".join(output.split("\n")[-ANALYSIS_WINDOW_LINES:])


def _any(patterns, text: str) -> bool:
    return any(p.search(text) for p in patterns)


def _has_non_completion(text: str) -> bool:
    # Without MULTILINE the trailing-question pattern only sees the last line
    return _any(NON_COMPLETION_PATTERNS, text)


def is_completion_candidate(output: str) -> bool:
    recent = _recent(output)
    return _any(CANDIDATE_PATTERNS, recent) and not _has_non_completion(recent)


def assess_heuristically(output: str) -> CompletionAssessment:
    recent = _recent(output)
    candidate = _any(CANDIDATE_PATTERNS, recent)
    blocked = _has_non_completion(recent)

    if DONE_LOCALLY_PATTERN.search(recent) and PENDING_SUBMIT_PATTERN.search(recent) and not blocked:
        return CompletionAssessment(
            True, 0.84,
            "Heuristic: implementation appears complete and stalled at PR-submission workflow", False,
        )
    if blocked and not candidate:
        return CompletionAssessment(False, 0.0, "Heuristic: blocked/incomplete signals detected", False)
    if not candidate:
        return CompletionAssessment(False, 0.0, "No completion-candidate signals in output", False)
    return CompletionAssessment(
        False, 0.35, "Heuristic: candidate signals found; awaiting AI semantic classification", False,
    )


def is_classifier_timeout(reason: str) -> bool:
    return bool(CLASSIFIER_TIMEOUT_PATTERN.search(reason))


def build_prompt(session_name: str, story_id: str, output: str) -> str:
    return (
        f"{CLASSIFIER_SYSTEM_PROMPT}\n\n"
        f"Session: {session_name}\n"
        f"Story: {story_id}\n"
        "Classify whether the agent is done and should move to PR submission workflow.\n"
        "Rules:\n"
        "- done=true only when output indicates completed implementation summary/final report.\n"
        "- done=false if output is planning, blocked, asking for approval, or still executing.\n"
        "- Confidence must be between 0 and 1.\n"
        "Respond with exactly:\n"
        '{"done": boolean, "confidence": number, "reason": string}\n'
        "\nOUTPUT:\n<<<\n"
        f"{output}\n>>>"
    )


def parse_assessment(raw: str) -> CompletionAssessment | None:
    """Validated assessment from a classifier reply, or None if unusable."""
    try:
        data = extract_json_object(raw, "completion")
    except ValidationError as e:
        logger.debug(f"[completion] Rejected classifier reply: {e}")
        return None
    return CompletionAssessment(data["done"], float(data["confidence"]), data["reason"], True)


def _classifier_command(config: ClassifierConfig, prompt: str, workdir: Path) -> tuple[list[str], str | None, Path | None]:
    """Build (argv, stdin, output_file) for the configured classifier CLI."""
    schema = json.dumps(load_schema("completion"))
    if config.cli_tool == "claude":
        return ([
            "claude", "--print", "--model", config.model, "--tools", "",
            "--output-format", "text", "--json-schema", schema, prompt,
        ], None, None)
    if config.cli_tool == "gemini":
        return ([
            "gemini", "--model", config.model, "--output-format", "json", "--sandbox", "false", prompt,
        ], None, None)

    schema_file = workdir / "completion-schema.json"
    schema_file.write_text(schema)
    output_file = workdir / "completion-output.json"
    return ([
        "codex", "exec", "--skip-git-repo-check", "--sandbox", "read-only",
        "--ask-for-approval", "never", "--ephemeral", "--model", config.model,
        "--output-schema", str(schema_file), "--output-last-message", str(output_file), "-",
    ], prompt, output_file)


def run_classifier(config: ClassifierConfig, prompt: str) -> str:
    """Run the local classifier CLI and return its raw reply.

    Raises:
        ClassifierError: CLI missing, timed out, or exited non-zero
    """
    timeout = config.timeout_ms / 1000
    workdir = Path(tempfile.mkdtemp(prefix="hive-classifier-"))
    try:
        cmd, stdin, output_file = _classifier_command(config, prompt, workdir)
        try:
            result = subprocess.run(cmd, input=stdin, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise ClassifierError(f"Command timed out after {timeout:g}s: {cmd[0]}") from None
        except FileNotFoundError:
            raise ClassifierError(f"{cmd[0]} CLI not found") from None

        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip() or "(no output)"
            raise ClassifierError(f"{cmd[0]} failed (exit {result.returncode}): {detail}")

        if output_file is not None:
            if not output_file.exists():
                raise ClassifierError(f"{cmd[0]} wrote no output")
            return output_file.read_text()
        return result.stdout
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


def assess_completion(
    config: ClassifierConfig,
    session_name: str,
    story_id: str,
    output: str,
    now: float | None = None,
) -> CompletionAssessment:
    """Decide whether a stalled session has finished its story."""
    now = time.time() if now is None else now
    recent = _recent(output)
    heuristic = assess_heuristically(recent)

    key = f"{session_name}:{story_id}"
    fingerprint = hashlib.sha256(recent.encode()).hexdigest()
    cached = _cache.get(key)
    if cached and cached.fingerprint == fingerprint and cached.expires_at > now:
        return cached.assessment

    try:
        reply = run_classifier(config, build_prompt(session_name, story_id, recent))
        assessment = parse_assessment(reply) or CompletionAssessment(False, 0.0, UNPARSEABLE_REASON, True)
    except ClassifierError as e:
        logger.warning(f"[completion] Classifier unavailable for {session_name}: {e}")
        if heuristic.done:
            reason = f"{heuristic.reason}; local classifier unavailable: {e}"
        else:
            reason = f"Local classifier unavailable: {e}"
        assessment = replace(heuristic, reason=reason, used_ai=False)

    _cache[key] = _CacheEntry(now + CACHE_TTL_SECONDS, fingerprint, assessment)
    return assessment
