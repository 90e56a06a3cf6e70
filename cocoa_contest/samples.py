"""Sample categories, status lifecycle and the codes printed on sample labels."""

from __future__ import annotations

import random
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional


class SampleCategory(str, Enum):
    COCOA_BEANS = "cocoa_beans"
    COCOA_LIQUOR = "cocoa_liquor"
    CHOCOLATE = "chocolate"


class SampleStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    RECEIVED = "received"
    PHYSICAL_EVALUATION = "physical_evaluation"
    APPROVED = "approved"
    DISQUALIFIED = "disqualified"
    EVALUATED = "evaluated"


TRANSITIONS: Dict[SampleStatus, FrozenSet[SampleStatus]] = {
    SampleStatus.DRAFT: frozenset({SampleStatus.SUBMITTED}),
    SampleStatus.SUBMITTED: frozenset({SampleStatus.RECEIVED}),
    SampleStatus.RECEIVED: frozenset(
        {SampleStatus.PHYSICAL_EVALUATION, SampleStatus.APPROVED, SampleStatus.DISQUALIFIED}
    ),
    SampleStatus.PHYSICAL_EVALUATION: frozenset({SampleStatus.APPROVED, SampleStatus.DISQUALIFIED}),
    SampleStatus.APPROVED: frozenset({SampleStatus.EVALUATED, SampleStatus.DISQUALIFIED}),
    SampleStatus.DISQUALIFIED: frozenset(),
    SampleStatus.EVALUATED: frozenset(),
}

# Only bean samples go through physical screening
PHYSICAL_CATEGORIES = frozenset({SampleCategory.COCOA_BEANS})


class InvalidTransition(ValueError):
    def __init__(self, current: SampleStatus, new: SampleStatus):
        super().__init__(f"Cannot move sample from '{current.value}' to '{new.value}'.")
        self.current = current
        self.new = new


def can_transition(current: SampleStatus, new: SampleStatus) -> bool:
    return new in TRANSITIONS[current]


def ensure_transition(current: str, new: str) -> SampleStatus:
    cur, nxt = SampleStatus(current), SampleStatus(new)
    if not can_transition(cur, nxt):
        raise InvalidTransition(cur, nxt)
    return nxt


def needs_physical_evaluation(category: str) -> bool:
    return SampleCategory(category) in PHYSICAL_CATEGORIES


def generate_tracking_code(
    exists: Callable[[str], bool],
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    max_attempts: int = 1000,
) -> str:
    """CC-YYYY-NNNNNN, redrawn until `exists` reports the code unused."""
    now = now or datetime.utcnow()
    rng = rng or random.SystemRandom()
    for _ in range(max_attempts):
        code = f"CC-{now.year}-{rng.randrange(1_000_000):06d}"
        if not exists(code):
            return code
    raise RuntimeError("Could not allocate an unused tracking code.")


def internal_code(created_at: str, sample_id) -> str:
    """INT-YYYYMM-XXX from the creation timestamp and the tail of the sample id."""
    created = datetime.fromisoformat(created_at)
    return f"INT-{created.year}{created.month:02d}-{str(sample_id).zfill(3)[-3:].upper()}"


def ensure_approvable(category: str, current: str) -> SampleStatus:
    """Bean samples must pass physical screening before they can be approved."""
    cur = SampleStatus(current)
    if needs_physical_evaluation(category) and cur is not SampleStatus.PHYSICAL_EVALUATION:
        raise InvalidTransition(cur, SampleStatus.APPROVED)
    return ensure_transition(current, SampleStatus.APPROVED.value)
