"""Order status state machine.

    pending -> processing -> {success, failed, cancelled}
    pending -> {success, failed, cancelled}
    success -> refunded

``failed``, ``cancelled`` and ``refunded`` are terminal.
"""

from paygate.services.payment.errors import InvalidStateTransition

PENDING = "pending"
PROCESSING = "processing"
SUCCESS = "success"
FAILED = "failed"
CANCELLED = "cancelled"
REFUNDED = "refunded"

ORDER_STATUSES = (PENDING, PROCESSING, SUCCESS, FAILED, CANCELLED, REFUNDED)
OPEN_STATUSES = (PENDING, PROCESSING)
TERMINAL_STATUSES = (FAILED, CANCELLED, REFUNDED)

TRANSITIONS = {
    PENDING: {PROCESSING, SUCCESS, FAILED, CANCELLED},
    PROCESSING: {SUCCESS, FAILED, CANCELLED},
    SUCCESS: {REFUNDED},
    FAILED: set(),
    CANCELLED: set(),
    REFUNDED: set(),
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def check_transition(current: str, target: str, order_no: str = None) -> None:
    if target not in ORDER_STATUSES:
        raise InvalidStateTransition(f"Unknown order status: {target}", order_no=order_no)
    if not can_transition(current, target):
        raise InvalidStateTransition(
            f"Order cannot move from {current} to {target}",
            order_no=order_no,
            current=current,
            target=target,
        )
