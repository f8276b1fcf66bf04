"""Refactor capacity policy.

Refactor stories (titled "Refactor: ...") only get a share of the capacity
that feature work in the same batch uses.
"""

import logging
import math
import re

from hive.lib.config import RefactorConfig

logger = logging.getLogger(__name__)

_REFACTOR_TITLE_RE = re.compile(r"^refactor\s*:", re.IGNORECASE)


def is_refactor_story(story) -> bool:
    return bool(_REFACTOR_TITLE_RE.match(story["title"] or ""))


def capacity_points(story) -> int:
    return story["story_points"] or story["complexity_score"] or 1


def refactor_budget(feature_points: int, policy: RefactorConfig) -> float:
    """Points of refactor work allowed alongside `feature_points` of features."""
    if feature_points == 0:
        return math.inf if policy.allow_without_feature_work else 0
    budget = math.floor(feature_points * policy.capacity_percent / 100)
    if policy.capacity_percent > 0:
        budget = max(1, budget)
    return budget


def apply_refactor_policy(stories: list, policy: RefactorConfig) -> list:
    """Drop refactor stories that exceed the policy, keeping batch order."""
    refactors = [s for s in stories if is_refactor_story(s)]
    if not refactors:
        return list(stories)

    features = [s for s in stories if not is_refactor_story(s)]
    if not policy.enabled:
        logger.debug(f"[scheduler] Holding back {len(refactors)} refactor stories (refactor disabled)")
        return features

    budget = refactor_budget(sum(capacity_points(s) for s in features), policy)
    used = 0
    allowed = set()
    for story in refactors:
        points = capacity_points(story)
        if used + points <= budget:
            allowed.add(story["id"])
            used += points

    held = len(refactors) - len(allowed)
    if held:
        logger.debug(f"[scheduler] Holding back {held} refactor stories over budget {budget}")
    return [s for s in stories if not is_refactor_story(s) or s["id"] in allowed]
