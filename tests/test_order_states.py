import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from paygate.services.payment.errors import InvalidStateTransition
from paygate.services.payment.order_states import (
    ORDER_STATUSES,
    TERMINAL_STATUSES,
    can_transition,
    check_transition,
)


@pytest.mark.parametrize(
    "current,target",
    [
        ("pending", "processing"),
        ("pending", "success"),
        ("pending", "cancelled"),
        ("processing", "success"),
        ("processing", "failed"),
        ("success", "refunded"),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)
    check_transition(current, target)


def test_terminal_states_reject_everything():
    for current in TERMINAL_STATUSES:
        for target in ORDER_STATUSES:
            assert not can_transition(current, target)
            with pytest.raises(InvalidStateTransition):
                check_transition(current, target, order_no="PAY1")


def test_success_only_moves_to_refunded():
    assert not can_transition("success", "failed")
    assert not can_transition("success", "pending")
    with pytest.raises(InvalidStateTransition):
        check_transition("pending", "refunded")


def test_unknown_target_status_is_rejected():
    with pytest.raises(InvalidStateTransition):
        check_transition("pending", "teleported")
