"""
Shared status enums for Hive entities.

Values match the strings stored in the database CHECK constraints.
"""

from enum import Enum


class AgentType(str, Enum):
    TECH_LEAD = "tech_lead"
    SENIOR = "senior"
    INTERMEDIATE = "intermediate"
    JUNIOR = "junior"
    QA = "qa"


class AgentStatus(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    BLOCKED = "blocked"
    TERMINATED = "terminated"


class StoryStatus(str, Enum):
    DRAFT = "draft"
    ESTIMATED = "estimated"
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    QA = "qa"
    QA_FAILED = "qa_failed"
    PR_SUBMITTED = "pr_submitted"
    MERGED = "merged"


class PRStatus(str, Enum):
    QUEUED = "queued"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    MERGED = "merged"
    REJECTED = "rejected"
    CLOSED = "closed"


class EscalationStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class MessageStatus(str, Enum):
    PENDING = "pending"
    READ = "read"
    REPLIED = "replied"


class CliTool(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"


# Stories that count as someone's active work
ACTIVE_STORY_STATUSES = (
    StoryStatus.IN_PROGRESS,
    StoryStatus.REVIEW,
    StoryStatus.QA,
    StoryStatus.QA_FAILED,
)

# A dependency in one of these statuses no longer blocks its dependents
DEPENDENCY_SATISFIED_STATUSES = (StoryStatus.MERGED,) + ACTIVE_STORY_STATUSES

# Stories whose points count toward a team's workload
WORKLOAD_STORY_STATUSES = (StoryStatus.PLANNED,) + ACTIVE_STORY_STATUSES

# PRs still waiting for a reviewer decision
MERGE_QUEUE_STATUSES = (PRStatus.QUEUED, PRStatus.REVIEWING)

ACTIVE_ESCALATION_STATUSES = (EscalationStatus.PENDING, EscalationStatus.ACKNOWLEDGED)


def status_value(status: "str | Enum") -> str:
    """Plain string for a status enum member or an already-plain string."""
    return status.value if isinstance(status, Enum) else status
