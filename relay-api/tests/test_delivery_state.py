import pytest

import delivery_state
from delivery_state import TransitionError, advance, is_terminal, is_valid_transition, severity_for
from models import DeploymentState as S


def test_ungated_happy_path():
    path = [S.PENDING]
    for event in ["start", "snapshot_captured", "rendered", "applied", "healthy", "promoted"]:
        path.append(advance(path[-1], event))
    assert path == [
        S.PENDING,
        S.SNAPSHOTTING,
        S.RENDERING,
        S.APPLYING,
        S.HEALTH_CHECKING,
        S.PROMOTING,
        S.SUCCEEDED,
    ]


def test_gated_rendering_waits_for_approval():
    assert advance(S.RENDERING, "rendered", gated=True) == S.AWAITING_APPROVAL
    assert advance(S.AWAITING_APPROVAL, "approved", gated=True) == S.APPLYING


@pytest.mark.parametrize(
    "state",
    [S.SNAPSHOTTING, S.RENDERING, S.AWAITING_APPROVAL, S.APPLYING, S.HEALTH_CHECKING, S.SUCCEEDED],
)
def test_rollback_sources(state):
    assert advance(state, "rollback") == S.ROLLING_BACK


@pytest.mark.parametrize("state", [S.PENDING, S.PROMOTING, S.ROLLED_BACK, S.ROLLBACK_FAILED, S.ROLLING_BACK])
def test_rollback_rejected_outside_sources(state):
    with pytest.raises(TransitionError):
        advance(state, "rollback")


def test_rolling_back_ends_in_terminal_states():
    assert advance(S.ROLLING_BACK, "restored") == S.ROLLED_BACK
    assert advance(S.ROLLING_BACK, "restore_failed") == S.ROLLBACK_FAILED


def test_skipping_states_is_rejected():
    with pytest.raises(TransitionError):
        advance(S.PENDING, "applied")
    with pytest.raises(TransitionError):
        advance("RENDERING", "healthy")
    assert not is_valid_transition("PENDING", "APPLYING")
    assert not is_valid_transition("PROMOTING", "ROLLING_BACK")
    assert is_valid_transition(None, "PENDING")
    assert not is_valid_transition(None, "SNAPSHOTTING")


def test_every_allowed_transition_is_reachable_by_an_event():
    reachable = set()
    events = ["start", "snapshot_captured", "rendered", "approved", "applied", "healthy", "promoted", "rollback", "restored", "restore_failed"]
    for state in S:
        for event in events:
            for gated in (False, True):
                try:
                    reachable.add((state, advance(state, event, gated)))
                except TransitionError:
                    continue
    expected = {(src, dst) for src, targets in delivery_state.ALLOWED_TRANSITIONS.items() for dst in targets}
    assert reachable == expected


def test_terminal_states_and_severity():
    assert is_terminal("SUCCEEDED")
    assert is_terminal(S.ROLLED_BACK)
    assert not is_terminal(S.AWAITING_APPROVAL)
    assert severity_for(S.ROLLBACK_FAILED) == "critical"
    assert severity_for("ROLLED_BACK") == "warning"
    assert severity_for(S.SUCCEEDED) == "info"
