import random
import re
from datetime import datetime

import pytest

from cocoa_contest.samples import (
    InvalidTransition,
    SampleStatus,
    can_transition,
    ensure_approvable,
    ensure_transition,
    generate_tracking_code,
    internal_code,
    needs_physical_evaluation,
)


def test_forward_transitions():
    assert can_transition(SampleStatus.DRAFT, SampleStatus.SUBMITTED)
    assert can_transition(SampleStatus.SUBMITTED, SampleStatus.RECEIVED)
    assert can_transition(SampleStatus.RECEIVED, SampleStatus.PHYSICAL_EVALUATION)
    assert can_transition(SampleStatus.PHYSICAL_EVALUATION, SampleStatus.APPROVED)
    assert can_transition(SampleStatus.APPROVED, SampleStatus.EVALUATED)
    assert not can_transition(SampleStatus.SUBMITTED, SampleStatus.APPROVED)
    assert not can_transition(SampleStatus.EVALUATED, SampleStatus.APPROVED)
    assert not can_transition(SampleStatus.DISQUALIFIED, SampleStatus.RECEIVED)


def test_ensure_transition_raises_with_readable_message():
    assert ensure_transition("submitted", "received") is SampleStatus.RECEIVED
    with pytest.raises(InvalidTransition, match="Cannot move sample from 'submitted' to 'evaluated'."):
        ensure_transition("submitted", "evaluated")
    with pytest.raises(ValueError):
        ensure_transition("submitted", "shipped")


def test_beans_need_physical_evaluation_before_approval():
    assert needs_physical_evaluation("cocoa_beans")
    assert not needs_physical_evaluation("chocolate")

    with pytest.raises(InvalidTransition):
        ensure_approvable("cocoa_beans", "received")
    assert ensure_approvable("cocoa_beans", "physical_evaluation") is SampleStatus.APPROVED
    assert ensure_approvable("cocoa_liquor", "received") is SampleStatus.APPROVED
    with pytest.raises(InvalidTransition):
        ensure_approvable("chocolate", "submitted")


def test_tracking_code_format():
    code = generate_tracking_code(lambda c: False, now=datetime(2025, 3, 1), rng=random.Random(7))
    assert re.fullmatch(r"CC-2025-\d{6}", code)


def test_tracking_code_redraws_taken_codes():
    seen = []

    def exists(code):
        seen.append(code)
        return len(seen) < 3

    code = generate_tracking_code(exists, now=datetime(2025, 3, 1), rng=random.Random(7))
    assert len(seen) == 3
    assert code == seen[-1]


def test_tracking_code_gives_up():
    with pytest.raises(RuntimeError):
        generate_tracking_code(lambda c: True, max_attempts=5)


def test_internal_code():
    assert internal_code("2025-03-14T10:00:00", 7) == "INT-202503-007"
    assert internal_code("2024-11-02T08:30:00", 1234) == "INT-202411-234"
