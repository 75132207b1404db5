from harvest.state_machine import VMState, can_transition


def test_valid_transitions():
    assert can_transition(VMState.CREATING.value, VMState.RUNNING.value)
    assert can_transition(VMState.CREATING.value, VMState.DELETING.value)
    assert can_transition(VMState.RUNNING.value, VMState.DELETING.value)


def test_invalid_transition_rejected():
    assert not can_transition(VMState.DELETING.value, VMState.RUNNING.value)
    assert not can_transition(VMState.RUNNING.value, VMState.CREATING.value)


def test_idempotent_transition_allowed():
    assert can_transition(VMState.DELETING.value, VMState.DELETING.value)
