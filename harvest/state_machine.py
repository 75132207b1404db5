from enum import Enum


class VMState(str, Enum):
    CREATING = "CREATING"
    RUNNING = "RUNNING"
    DELETING = "DELETING"


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    VMState.CREATING.value: {VMState.RUNNING.value, VMState.DELETING.value},
    VMState.RUNNING.value: {VMState.DELETING.value},
    VMState.DELETING.value: set(),
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
