from typing import Optional, Union

from models import DeploymentState, Severity


PENDING = DeploymentState.PENDING
SNAPSHOTTING = DeploymentState.SNAPSHOTTING
RENDERING = DeploymentState.RENDERING
AWAITING_APPROVAL = DeploymentState.AWAITING_APPROVAL
APPLYING = DeploymentState.APPLYING
HEALTH_CHECKING = DeploymentState.HEALTH_CHECKING
PROMOTING = DeploymentState.PROMOTING
SUCCEEDED = DeploymentState.SUCCEEDED
ROLLING_BACK = DeploymentState.ROLLING_BACK
ROLLED_BACK = DeploymentState.ROLLED_BACK
ROLLBACK_FAILED = DeploymentState.ROLLBACK_FAILED

TERMINAL_STATES = {SUCCEEDED, ROLLED_BACK, ROLLBACK_FAILED}
# States from which a failure or a rollback request leads to ROLLING_BACK.
ROLLBACK_SOURCE_STATES = {SNAPSHOTTING, RENDERING, AWAITING_APPROVAL, APPLYING, HEALTH_CHECKING}

ALLOWED_TRANSITIONS = {
    PENDING: {SNAPSHOTTING},
    SNAPSHOTTING: {RENDERING, ROLLING_BACK},
    RENDERING: {AWAITING_APPROVAL, APPLYING, ROLLING_BACK},
    AWAITING_APPROVAL: {APPLYING, ROLLING_BACK},
    APPLYING: {HEALTH_CHECKING, ROLLING_BACK},
    HEALTH_CHECKING: {PROMOTING, ROLLING_BACK},
    PROMOTING: {SUCCEEDED},
    SUCCEEDED: {ROLLING_BACK},
    ROLLING_BACK: {ROLLED_BACK, ROLLBACK_FAILED},
    ROLLED_BACK: set(),
    ROLLBACK_FAILED: set(),
}

START = "start"
SNAPSHOT_CAPTURED = "snapshot_captured"
RENDERED = "rendered"
APPROVED = "approved"
APPLIED = "applied"
HEALTHY = "healthy"
PROMOTED = "promoted"
ROLLBACK = "rollback"
RESTORED = "restored"
RESTORE_FAILED = "restore_failed"

_FORWARD = {
    (PENDING, START): SNAPSHOTTING,
    (SNAPSHOTTING, SNAPSHOT_CAPTURED): RENDERING,
    (AWAITING_APPROVAL, APPROVED): APPLYING,
    (APPLYING, APPLIED): HEALTH_CHECKING,
    (HEALTH_CHECKING, HEALTHY): PROMOTING,
    (PROMOTING, PROMOTED): SUCCEEDED,
    (ROLLING_BACK, RESTORED): ROLLED_BACK,
    (ROLLING_BACK, RESTORE_FAILED): ROLLBACK_FAILED,
}


class TransitionError(ValueError):
    def __init__(self, state: DeploymentState, event: str) -> None:
        super().__init__(f"Event {event} is not valid in state {state.value}")
        self.state = state
        self.event = event


def _coerce(state: Union[str, DeploymentState]) -> DeploymentState:
    return state if isinstance(state, DeploymentState) else DeploymentState(state)


def advance(state: Union[str, DeploymentState], event: str, gated: bool = False) -> DeploymentState:
    """Return the state that follows `state` on `event`.

    `gated` selects whether RENDERING leads to AWAITING_APPROVAL or straight
    to APPLYING. A rollback from SUCCEEDED is only valid as a manual request;
    callers decide that before advancing.
    """
    current = _coerce(state)
    if event == RENDERED and current == RENDERING:
        return AWAITING_APPROVAL if gated else APPLYING
    if event == ROLLBACK and (current in ROLLBACK_SOURCE_STATES or current == SUCCEEDED):
        return ROLLING_BACK
    nxt = _FORWARD.get((current, event))
    if nxt is None:
        raise TransitionError(current, event)
    return nxt


def is_valid_transition(from_state: Optional[Union[str, DeploymentState]], to_state: Union[str, DeploymentState]) -> bool:
    if from_state is None:
        return _coerce(to_state) == PENDING
    return _coerce(to_state) in ALLOWED_TRANSITIONS.get(_coerce(from_state), set())


def is_terminal(state: Union[str, DeploymentState]) -> bool:
    return _coerce(state) in TERMINAL_STATES


def severity_for(state: Union[str, DeploymentState]) -> str:
    current = _coerce(state)
    if current == ROLLBACK_FAILED:
        return Severity.CRITICAL.value
    if current == ROLLED_BACK:
        return Severity.WARNING.value
    return Severity.INFO.value
