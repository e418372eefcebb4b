import re
from enum import Enum
from typing import Optional


class OrderStep(str, Enum):
    DATE = "date"
    TIME = "time"
    EXACT_TIME = "exactTime"
    ADDRESS = "address"
    CARD_TEXT = "cardText"
    YOUR_NAME = "yourName"
    YOUR_PHONE = "yourPhone"
    RECIPIENT_NAME = "recipientName"
    RECIPIENT_PHONE = "recipientPhone"
    CONFIRM = "confirm"


# EXACT_TIME is a side branch of TIME and never part of the linear order
STEPS_ORDER = [
    OrderStep.DATE,
    OrderStep.TIME,
    OrderStep.ADDRESS,
    OrderStep.CARD_TEXT,
    OrderStep.YOUR_NAME,
    OrderStep.YOUR_PHONE,
    OrderStep.RECIPIENT_NAME,
    OrderStep.RECIPIENT_PHONE,
    OrderStep.CONFIRM,
]

PHONE_STEPS = {OrderStep.YOUR_PHONE, OrderStep.RECIPIENT_PHONE}

VALID_TRANSITIONS = {
    OrderStep.DATE: [OrderStep.TIME],
    OrderStep.TIME: [OrderStep.ADDRESS, OrderStep.EXACT_TIME],
    OrderStep.EXACT_TIME: [OrderStep.ADDRESS],
    OrderStep.ADDRESS: [OrderStep.CARD_TEXT],
    OrderStep.CARD_TEXT: [OrderStep.YOUR_NAME],
    OrderStep.YOUR_NAME: [OrderStep.YOUR_PHONE],
    OrderStep.YOUR_PHONE: [OrderStep.RECIPIENT_NAME],
    OrderStep.RECIPIENT_NAME: [OrderStep.RECIPIENT_PHONE],
    OrderStep.RECIPIENT_PHONE: [OrderStep.CONFIRM],
    OrderStep.CONFIRM: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_step: OrderStep, to_step: OrderStep):
        self.from_step = from_step
        self.to_step = to_step
        super().__init__(f"Invalid transition: {from_step.value} -> {to_step.value}")


def can_transition(from_step: OrderStep, to_step: OrderStep) -> bool:
    """Check if transition is valid."""
    return to_step in VALID_TRANSITIONS.get(from_step, [])


def transition(from_step: OrderStep, to_step: OrderStep) -> OrderStep:
    """Perform step transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_step, to_step):
        raise InvalidTransitionError(from_step, to_step)
    return to_step


def next_step(step: OrderStep) -> Optional[OrderStep]:
    """Next step of the linear form, None after CONFIRM."""
    if step == OrderStep.EXACT_TIME:
        return OrderStep.ADDRESS
    index = STEPS_ORDER.index(step)
    if index + 1 < len(STEPS_ORDER):
        return STEPS_ORDER[index + 1]
    return None


def advance(step: OrderStep) -> OrderStep:
    """Move one step forward; CONFIRM stays where it is."""
    target = next_step(step)
    if target is None:
        return step
    return transition(step, target)


def is_valid_phone(text: str, min_digits: int = 10) -> bool:
    digits = re.sub(r"[^0-9]", "", text or "")
    return len(digits) >= min_digits
