from typing import Dict, Tuple

from errors import InvalidTransitionError

ORDER_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("assigned", "delivered"),
    # back to pending / assigned only when a train is cancelled
    "assigned": ("in-transit", "delivered", "pending"),
    "in-transit": ("delivered", "assigned"),
    "delivered": (),
}

TRAIN_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "Planned": ("In Progress", "Cancelled"),
    "In Progress": ("Completed", "Cancelled"),
    "Completed": (),
    "Cancelled": (),
}


def check_order_transition(current: str, new: str) -> None:
    allowed = ORDER_TRANSITIONS.get(current, ())
    if new not in allowed:
        raise InvalidTransitionError("car order", current, new, allowed)


def check_train_transition(current: str, new: str) -> None:
    allowed = TRAIN_TRANSITIONS.get(current, ())
    if new not in allowed:
        raise InvalidTransitionError("train", current, new, allowed)
