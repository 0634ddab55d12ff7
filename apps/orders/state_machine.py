"""
Order lifecycle.

    PENDING ──> PROCESSING ──> SHIPPED ──> DELIVERED
       │             │
       └──> CANCELLED <┘

DELIVERED and CANCELLED are terminal. Every status change in the system
is checked here before anything is persisted.
"""
from apps.utils.exceptions import InvalidTransitionError, ValidationError

from .models import Order

Status = Order.Status

TRANSITIONS = {
    Status.PENDING: frozenset({Status.PROCESSING, Status.CANCELLED}),
    Status.PROCESSING: frozenset({Status.SHIPPED, Status.CANCELLED}),
    Status.SHIPPED: frozenset({Status.DELIVERED}),
    Status.DELIVERED: frozenset(),
    Status.CANCELLED: frozenset(),
}


def parse_status(value):
    """Accepts a status code or its display name, any case."""
    if isinstance(value, Status):
        return value
    if value is None or not str(value).strip():
        raise ValidationError("Order status is required.")

    text = str(value).strip()
    for status in Status:
        if text.upper() == status.value or text.lower() == status.label.lower():
            return status
    raise ValidationError(f"Unknown order status: {value!r}")


class OrderStatusMachine:

    @staticmethod
    def allowed_from(current):
        return TRANSITIONS.get(parse_status(current), frozenset())

    @staticmethod
    def is_terminal(status):
        return not OrderStatusMachine.allowed_from(status)

    @staticmethod
    def can_transition(current, new) -> bool:
        try:
            return parse_status(new) in OrderStatusMachine.allowed_from(current)
        except ValidationError:
            return False

    @staticmethod
    def check(current, new):
        """Raises InvalidTransitionError unless current -> new is legal."""
        if not OrderStatusMachine.can_transition(current, new):
            raise InvalidTransitionError(f"Cannot move order from {current} to {new}.")
        return parse_status(new)
