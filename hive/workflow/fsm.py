"""Story and pull request status machines using the transitions library.

The transition tables are plain data. Every status write in hive.db goes
through validate_story_transition() / validate_pr_transition(), which run
the requested change through a Machine so an illegal move raises
InvalidTransition instead of reaching the database.

Two tables exist per entity:
- the canonical lifecycle, which defines can_transition()
- recovery transitions, used only by manager repair paths and always
  requested by trigger name

Usage:
    from hive.workflow.fsm import can_transition, validate_story_transition

    can_transition("planned", "in_progress")  # True
    validate_story_transition("STORY-1", "in_progress", "planned", recovery="recover_orphan")
"""

import logging

from transitions import Machine, MachineError

from hive.lib.types import PRStatus, StoryStatus, status_value

logger = logging.getLogger(__name__)


STORY_STATES = [s.value for s in StoryStatus]

# (trigger, source, dest); each trigger becomes a method on the model
STORY_TRANSITIONS = [
    {"trigger": "estimate", "source": "draft", "dest": "estimated"},
    {"trigger": "plan", "source": "estimated", "dest": "planned"},
    {"trigger": "start", "source": "planned", "dest": "in_progress"},
    {"trigger": "submit_review", "source": "in_progress", "dest": "review"},
    {"trigger": "fail", "source": "in_progress", "dest": "qa_failed"},
    {"trigger": "request_changes", "source": "review", "dest": "in_progress"},
    {"trigger": "start_qa", "source": "review", "dest": "qa"},
    {"trigger": "fail_qa", "source": "qa", "dest": "qa_failed"},
    {"trigger": "submit_pr", "source": "qa", "dest": "pr_submitted"},
    {"trigger": "resume", "source": "qa_failed", "dest": "in_progress"},
    {"trigger": "merge", "source": "pr_submitted", "dest": "merged"},
]

# Manager repair paths. Never consulted by can_transition().
STORY_RECOVERY_TRANSITIONS = [
    # Assigned agent's session died, or nobody owns the story any more
    {"trigger": "recover_orphan", "source": ["in_progress", "review", "qa", "qa_failed"], "dest": "planned"},
    # Merge observed on the hosting side
    {"trigger": "sync_merged", "source": ["in_progress", "review", "qa", "qa_failed", "pr_submitted"], "dest": "merged"},
    # Completion inferred from a stalled session
    {"trigger": "auto_submit", "source": "in_progress", "dest": "pr_submitted"},
    # QA rejected the submitted PR
    {"trigger": "qa_reject", "source": ["review", "qa", "pr_submitted"], "dest": "qa_failed"},
]

PR_STATES = [s.value for s in PRStatus]

PR_TRANSITIONS = [
    {"trigger": "start_review", "source": "queued", "dest": "reviewing"},
    {"trigger": "approve", "source": "reviewing", "dest": "approved"},
    {"trigger": "reject", "source": "reviewing", "dest": "rejected"},
    {"trigger": "merge", "source": "approved", "dest": "merged"},
    {"trigger": "close", "source": ["queued", "reviewing", "approved", "merged", "rejected"], "dest": "closed"},
]

PR_RECOVERY_TRANSITIONS = [
    # Reviewer session is gone
    {"trigger": "requeue_review", "source": "reviewing", "dest": "queued"},
    # Merged directly on the hosting side
    {"trigger": "sync_merged", "source": ["queued", "reviewing", "approved"], "dest": "merged"},
]


def _build_trigger_lookup(transitions: list[dict]) -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in transitions:
        sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
        for source in sources:
            key = (source, t["dest"])
            if key not in lookup:  # First trigger wins for a given source->dest
                lookup[key] = t["trigger"]
    return lookup


STORY_TRIGGER_FOR = _build_trigger_lookup(STORY_TRANSITIONS)
PR_TRIGGER_FOR = _build_trigger_lookup(PR_TRANSITIONS)


class InvalidTransition(Exception):
    """Raised when attempting a status change the tables do not allow."""

    def __init__(self, entity: str, from_state: str, to_state: str, entity_id: str = ""):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.entity_id = entity_id
        super().__init__(
            f"Invalid {entity} transition: {from_state} -> {to_state}"
            + (f" ({entity_id})" if entity_id else "")
        )


class StatusFSM:
    """In-memory status machine for a single story or pull request.

    Wraps a transitions Machine; the caller persists the resulting state.
    """

    def __init__(
        self,
        entity: str,
        entity_id: str,
        initial: str,
        states: list[str],
        transitions: list[dict],
    ):
        self.entity = entity
        self.entity_id = entity_id
        if initial not in states:
            raise InvalidTransition(entity, initial, "?", entity_id)

        self.machine = Machine(
            model=self,
            states=states,
            transitions=transitions,
            initial=initial,
            auto_transitions=False,  # Only explicit transitions
            send_event=True,  # Pass EventData to callbacks
            after_state_change="on_state_change",
        )

    def on_state_change(self, event) -> None:
        logger.debug(
            f"[FSM] {self.entity} {self.entity_id}: "
            f"{event.transition.source} -> {event.transition.dest} via {event.event.name}"
        )


def story_fsm(story_id: str, initial: str, recovery: bool = False) -> StatusFSM:
    transitions = STORY_TRANSITIONS + (STORY_RECOVERY_TRANSITIONS if recovery else [])
    return StatusFSM("story", story_id, initial, STORY_STATES, transitions)


def pr_fsm(pr_id: str, initial: str, recovery: bool = False) -> StatusFSM:
    transitions = PR_TRANSITIONS + (PR_RECOVERY_TRANSITIONS if recovery else [])
    return StatusFSM("pull request", pr_id, initial, PR_STATES, transitions)


def can_transition(from_status: str, to_status: str) -> bool:
    """True iff (from, to) is an edge of the canonical story lifecycle."""
    return (status_value(from_status), status_value(to_status)) in STORY_TRIGGER_FOR


def can_pr_transition(from_status: str, to_status: str) -> bool:
    """True iff (from, to) is an edge of the canonical PR pipeline."""
    return (status_value(from_status), status_value(to_status)) in PR_TRIGGER_FOR


def _run_transition(
    fsm: StatusFSM,
    lookup: dict[tuple[str, str], str],
    to_status: str,
    recovery: str | None,
) -> str:
    current = fsm.state
    trigger = recovery or lookup.get((current, to_status))
    if trigger is None:
        raise InvalidTransition(fsm.entity, current, to_status, fsm.entity_id)

    try:
        getattr(fsm, trigger)()
    except (AttributeError, MachineError) as e:
        raise InvalidTransition(fsm.entity, current, to_status, fsm.entity_id) from e

    # A recovery trigger must land exactly where the caller asked
    if fsm.state != to_status:
        raise InvalidTransition(fsm.entity, current, to_status, fsm.entity_id)
    return trigger


def validate_story_transition(
    story_id: str,
    from_status: str,
    to_status: str,
    recovery: str | None = None,
) -> str | None:
    """Validate a story status change.

    Args:
        story_id: Story being changed (for messages)
        from_status: Current stored status
        to_status: Requested status
        recovery: Name of a recovery trigger, for manager repair paths

    Returns:
        The trigger that performed the change, or None for a self-transition.

    Raises:
        InvalidTransition: If the change is not in the applicable table
    """
    from_status, to_status = status_value(from_status), status_value(to_status)
    if from_status == to_status:
        return None
    fsm = story_fsm(story_id, from_status, recovery=recovery is not None)
    return _run_transition(fsm, STORY_TRIGGER_FOR, to_status, recovery)


def validate_pr_transition(
    pr_id: str,
    from_status: str,
    to_status: str,
    recovery: str | None = None,
) -> str | None:
    """Validate a pull request status change. See validate_story_transition."""
    from_status, to_status = status_value(from_status), status_value(to_status)
    if from_status == to_status:
        return None
    fsm = pr_fsm(pr_id, from_status, recovery=recovery is not None)
    return _run_transition(fsm, PR_TRIGGER_FOR, to_status, recovery)
