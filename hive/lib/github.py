"""
GitHub integration via the gh CLI.

Read-only queries feed the merge-queue reconciliation; merge and close are
the only write actions. Every call carries a timeout.
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

logger = logging.getLogger(__name__)

# Timeout for GitHub CLI queries (seconds)
GH_TIMEOUT_SECONDS = 30

# Merges can wait on GitHub's auto-merge bookkeeping
GH_MERGE_TIMEOUT_SECONDS = 60

# Timeout for local git operations (seconds)
GIT_TIMEOUT_SECONDS = 30

# GitHub PR states as reported by `gh --json state`
GH_STATE_OPEN = "OPEN"
GH_STATE_MERGED = "MERGED"
GH_STATE_CLOSED = "CLOSED"

_SLUG_RE = re.compile(r"github\.com[/:]([^/]+/[^/.]+)")
_STORY_ID_RE = re.compile(r"STORY-[A-Z0-9]+", re.IGNORECASE)
_PR_NUMBER_RE = re.compile(r"/pull/(\d+)")

# gh stderr when the PR number does not exist in the repository
_PR_NOT_FOUND_RE = re.compile(r"could not resolve to a pullrequest|no pull requests? found", re.IGNORECASE)


class GitHubError(Exception):
    """A gh query failed; callers skip the reconciliation step this tick."""
    pass


class PRState(NamedTuple):
    """GitHub PR state information."""
    state: str  # "OPEN", "MERGED", "CLOSED" or "" on error
    mergeable: bool
    error: str | None = None
    not_found: bool = False


@dataclass
class GitHubPR:
    number: int
    branch: str
    url: str
    title: str
    created_at: str


def repo_slug(repo_url: str | None) -> str | None:
    """owner/name from an https or ssh GitHub URL."""
    if not repo_url:
        return None
    match = _SLUG_RE.search(repo_url)
    return match.group(1) if match else None


def extract_story_id_from_branch(branch: str | None) -> str | None:
    """STORY-XXX id embedded in a branch name, uppercased. A trailing description is dropped."""
    if not branch:
        return None
    match = _STORY_ID_RE.search(branch)
    return match.group(0).upper() if match else None


def pr_number_from_url(url: str | None) -> int | None:
    if not url:
        return None
    match = _PR_NUMBER_RE.search(url)
    return int(match.group(1)) if match else None


def _repo_args(slug: str | None) -> list[str]:
    return ["-R", slug] if slug else []


def list_prs(
    repo_dir: Path | str,
    state: str = "open",
    slug: str | None = None,
    limit: int | None = None,
) -> list[GitHubPR]:
    """List PRs in a repository.

    Raises:
        GitHubError: If gh fails or returns unparseable output
    """
    cmd = [
        "gh", "pr", "list", "--state", state,
        "--json", "number,headRefName,url,title,createdAt",
        *_repo_args(slug),
    ]
    if limit:
        cmd += ["--limit", str(limit)]
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, cwd=str(repo_dir), timeout=GH_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        raise GitHubError(f"gh pr list timed out after {GH_TIMEOUT_SECONDS}s") from None
    except (FileNotFoundError, subprocess.SubprocessError) as e:
        raise GitHubError(f"gh pr list failed: {e}") from e

    if result.returncode != 0:
        raise GitHubError(f"gh pr list failed: {result.stderr.strip()}")

    try:
        data = json.loads(result.stdout or "[]")
    except json.JSONDecodeError as e:
        raise GitHubError(f"Unparseable gh output: {e}") from e

    return [
        GitHubPR(
            number=int(item["number"]),
            branch=item.get("headRefName", ""),
            url=item.get("url", ""),
            title=item.get("title", ""),
            created_at=item.get("createdAt", ""),
        )
        for item in data
    ]


def get_pr_state(number: int, repo_dir: Path | str, slug: str | None = None) -> PRState:
    """State and mergeability of one PR.

    Returns PRState with error set on failure, and not_found also set when gh
    reports that the PR does not exist.
    """
    try:
        result = subprocess.run(
            ["gh", "pr", "view", str(number), "--json", "state,mergeable", *_repo_args(slug)],
            capture_output=True,
            text=True,
            cwd=str(repo_dir),
            timeout=GH_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        return PRState(state="", mergeable=False, error=f"Timed out after {GH_TIMEOUT_SECONDS}s")
    except (FileNotFoundError, subprocess.SubprocessError) as e:
        return PRState(state="", mergeable=False, error=str(e))

    if result.returncode != 0:
        stderr = result.stderr.strip()
        return PRState(state="", mergeable=False, error=stderr, not_found=bool(_PR_NOT_FOUND_RE.search(stderr)))

    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        return PRState(state="", mergeable=False, error=f"Unparseable gh output: {e}")

    return PRState(
        state=(data.get("state") or "").upper(),
        mergeable=data.get("mergeable") == "MERGEABLE",
    )


def merge_pr(number: int, repo_dir: Path | str, slug: str | None = None) -> tuple[bool, str]:
    """Squash-merge a PR and delete its branch. Returns (success, message)."""
    try:
        result = subprocess.run(
            ["gh", "pr", "merge", str(number), "--auto", "--squash", "--delete-branch", *_repo_args(slug)],
            capture_output=True,
            text=True,
            cwd=str(repo_dir),
            timeout=GH_MERGE_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        return False, f"Timed out after {GH_MERGE_TIMEOUT_SECONDS}s"
    except (FileNotFoundError, subprocess.SubprocessError) as e:
        return False, str(e)

    if result.returncode != 0:
        return False, result.stderr.strip() or result.stdout.strip()
    return True, result.stdout.strip()


def close_pr(
    number: int,
    repo_dir: Path | str,
    slug: str | None = None,
    comment: str | None = None,
) -> tuple[bool, str]:
    cmd = ["gh", "pr", "close", str(number), *_repo_args(slug)]
    if comment:
        cmd += ["--comment", comment]
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, cwd=str(repo_dir), timeout=GH_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        return False, f"Timed out after {GH_TIMEOUT_SECONDS}s"
    except (FileNotFoundError, subprocess.SubprocessError) as e:
        return False, str(e)

    if result.returncode != 0:
        return False, result.stderr.strip()
    return True, result.stdout.strip()


def current_branch(worktree: Path | str) -> str | None:
    """Checked-out branch in a worktree, or None if detached or unreadable."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            capture_output=True,
            text=True,
            cwd=str(worktree),
            timeout=GIT_TIMEOUT_SECONDS,
        )
    except (FileNotFoundError, NotADirectoryError, subprocess.TimeoutExpired, subprocess.SubprocessError) as e:
        logger.warning(f"git rev-parse failed in {worktree}: {e}")
        return None
    branch = result.stdout.strip()
    if result.returncode != 0 or not branch or branch == "HEAD":
        return None
    return branch
