from provisioner.errors import InvalidTransitionError
from provisioner.models import InstanceRecord, InstanceState


ALLOWED_TRANSITIONS: dict[InstanceState, set[InstanceState]] = {
    InstanceState.ABSENT: {
        InstanceState.CREATED,
        InstanceState.FAILED,
        InstanceState.DESTROYED,
    },
    InstanceState.CREATED: {
        InstanceState.CONFIGURED,
        InstanceState.FAILED,
        InstanceState.DESTROYED,
    },
    InstanceState.CONFIGURED: {
        InstanceState.STARTING,
        InstanceState.FAILED,
        InstanceState.DESTROYED,
    },
    InstanceState.STARTING: {
        InstanceState.AWAITING_READY,
        InstanceState.FAILED,
        InstanceState.DESTROYED,
    },
    InstanceState.AWAITING_READY: {
        InstanceState.READY,
        InstanceState.FAILED,
        InstanceState.DESTROYED,
    },
    InstanceState.READY: {InstanceState.DESTROYED},
    InstanceState.FAILED: {InstanceState.DESTROYED},
    InstanceState.DESTROYED: set(),
}

TERMINAL_STATES = {InstanceState.READY, InstanceState.FAILED, InstanceState.DESTROYED}


def can_transition(current: InstanceState, target: InstanceState) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())


def advance(record: InstanceRecord, target: InstanceState) -> None:
    if not can_transition(record.state, target):
        raise InvalidTransitionError(
            name=record.name, current=record.state.value, target=target.value
        )
    if record.state == target:
        return
    record.state = target
    record.history.append(target)


def is_terminal(state: InstanceState) -> bool:
    return state in TERMINAL_STATES
