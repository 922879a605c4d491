import asyncio

import pytest

from fake_platform import FakePlatform, permanent, transient
from models import Actor, Role
from platform_adapter.adapter import PROGRESSING, UNHEALTHY
from policy import (
    ConflictError,
    InvalidStateError,
    MutationsDisabledError,
    NotFoundError,
    PolicyError,
    PromotionOrderError,
    RollbackFailedError,
)
from storage import build_storage
from test_helpers import (
    ENVIRONMENTS,
    SERVICES,
    RecordingSink,
    build_orchestrator,
    make_settings,
    register_build,
    states,
)

pytestmark = pytest.mark.anyio

RELEASER = Actor(actor_id="user-1", role=Role.RELEASE_MANAGER)
APPROVER = Actor(actor_id="approver-1", role=Role.APPROVER)

HAPPY_GATED = [
    "PENDING",
    "SNAPSHOTTING",
    "RENDERING",
    "AWAITING_APPROVAL",
    "APPLYING",
    "HEALTH_CHECKING",
    "PROMOTING",
    "SUCCEEDED",
]


def _env(name: str, **changes) -> dict:
    entry = next(item for item in ENVIRONMENTS if item["name"] == name)
    return {**entry, **changes}


async def _wait_for_state(orch, deployment_id: str, state: str, timeout: float = 3.0) -> dict:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        current = orch.get_status(deployment_id)
        if current["state"] == state:
            return current
        if loop.time() > deadline:
            raise AssertionError(f"deployment {deployment_id} stuck in {current['state']}, expected {state}")
        await asyncio.sleep(0.01)


async def _promote(orch, version: str = "1.0.0", environment: str = "dev") -> str:
    return await orch.request_promotion(
        "payments", version, environment, change_summary=f"ship {version}", actor=RELEASER
    )


async def _promote_and_wait(orch, version: str = "1.0.0", environment: str = "dev") -> dict:
    deployment_id = await _promote(orch, version, environment)
    return await orch.wait(deployment_id, timeout=5)


async def _events(orch, sink: RecordingSink, deployment_id: str) -> list:
    await orch.notifier.drain()
    return [event for event in sink.events if event["deploymentId"] == deployment_id]


async def test_dev_to_prod_with_approval(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    sink = RecordingSink()
    orch = build_orchestrator(settings, platform, sink)
    register_build(orch.storage)

    dev = await _promote_and_wait(orch)
    assert dev["state"] == "SUCCEEDED"
    assert "AWAITING_APPROVAL" not in states(orch.storage, dev["id"])

    prod_id = await _promote(orch, environment="prod")
    await _wait_for_state(orch, prod_id, "AWAITING_APPROVAL")
    assert orch.get_approval(prod_id)["decision"] == "PENDING"
    assert [call for call in platform.calls if call[0] == "apply" and call[2] == "prod"] == []

    approval = orch.approve(prod_id, APPROVER, comment="looks good")
    assert approval["decision"] == "APPROVED"
    assert approval["decidedBy"] == "approver-1"

    prod = await orch.wait(prod_id, timeout=5)
    assert prod["state"] == "SUCCEEDED"
    assert states(orch.storage, prod_id) == HAPPY_GATED
    assert prod["renderedSpec"]["replicas"] == 3
    assert platform.applied[-1]["environment"] == "prod"
    assert platform.applied[-1]["labels"] == {"app": "payments", "environment": "prod"}
    assert orch.locks.owner("payments", "prod") is None

    events = await _events(orch, sink, prod_id)
    assert {event["toState"] for event in events} == set(HAPPY_GATED)
    assert {event["severity"] for event in events} == {"info"}
    await orch.shutdown()


async def test_unhealthy_rollout_is_restored(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    sink = RecordingSink()
    orch = build_orchestrator(settings, platform, sink)
    register_build(orch.storage, "1.0.0")
    register_build(orch.storage, "1.1.0")
    first = await _promote_and_wait(orch, "1.0.0")

    platform.script_health("1.1.0", PROGRESSING, UNHEALTHY)
    failed = await _promote_and_wait(orch, "1.1.0")

    assert failed["state"] == "ROLLED_BACK"
    assert failed["failureReason"] == "Rollout reported unhealthy instances"
    assert failed["failures"][-1]["category"] == "APP"
    assert states(orch.storage, failed["id"])[-3:] == ["HEALTH_CHECKING", "ROLLING_BACK", "ROLLED_BACK"]
    assert len(platform.restored) == 1
    assert platform.state[("payments", "dev")]["version"] == "1.0.0"
    assert orch.storage.find_live_deployment("payments", "dev")["id"] == first["id"]
    assert orch.storage.get_approval(failed["id"]) is None

    events = await _events(orch, sink, failed["id"])
    rolled_back = [event for event in events if event["toState"] == "ROLLED_BACK"]
    assert rolled_back[0]["severity"] == "warning"
    assert rolled_back[0]["failureReason"] == "Rollout reported unhealthy instances"
    await orch.shutdown()


async def test_failed_restore_ends_in_rollback_failed(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    sink = RecordingSink()
    orch = build_orchestrator(settings, platform, sink)
    register_build(orch.storage)
    platform.script_health("1.0.0", UNHEALTHY)
    platform.restore_error = transient("connection reset by platform")

    failed = await _promote_and_wait(orch)

    assert failed["state"] == "ROLLBACK_FAILED"
    assert failed["failures"][-1]["category"] == "ROLLBACK"
    assert failed["failureReason"] == "Rollback could not restore the snapshot"
    events = await _events(orch, sink, failed["id"])
    assert [event["severity"] for event in events if event["toState"] == "ROLLBACK_FAILED"] == ["critical"]
    with pytest.raises(RollbackFailedError):
        await orch.request_rollback(failed["id"], actor=RELEASER)
    await orch.shutdown()


async def test_first_promotion_unhealthy_rolls_back_without_approval(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)
    platform.script_health("1.0.0", UNHEALTHY)

    failed = await _promote_and_wait(orch)

    assert failed["state"] == "ROLLED_BACK"
    assert orch.storage.get_approval(failed["id"]) is None
    with pytest.raises(NotFoundError):
        orch.get_approval(failed["id"])
    assert platform.restored == [("payments", "dev", {"version": None})]
    assert platform.state[("payments", "dev")] == {"version": None}
    assert orch.storage.find_live_deployment("payments", "dev") is None
    await orch.shutdown()


async def test_unexpected_restore_error_ends_in_rollback_failed(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage, "1.0.0")
    register_build(orch.storage, "1.1.0")
    platform.script_health("1.0.0", UNHEALTHY)
    platform.restore_error = RuntimeError("restore worker crashed")

    failed = await _promote_and_wait(orch)

    assert failed["state"] == "ROLLBACK_FAILED"
    assert failed["failures"][-1]["category"] == "ROLLBACK"
    assert failed["failures"][-1]["detail"] == "restore worker crashed"
    assert orch.locks.owner("payments", "dev") is None
    assert orch.storage.list_non_terminal_deployments() == []
    assert await orch.recover() == []

    platform.restore_error = None
    follow_up = await _promote_and_wait(orch, "1.1.0")
    assert follow_up["state"] == "SUCCEEDED"
    await orch.shutdown()


async def test_crash_while_rolling_back_ends_in_rollback_failed(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)
    platform.script_health("1.0.0", UNHEALTHY)

    def broken_lookup(deployment_id, state):
        raise RuntimeError("ledger lookup failed")

    monkeypatch.setattr(orch.storage, "has_reached_state", broken_lookup)
    failed = await _promote_and_wait(orch)

    assert failed["state"] == "ROLLBACK_FAILED"
    assert states(orch.storage, failed["id"])[-2:] == ["ROLLING_BACK", "ROLLBACK_FAILED"]
    assert orch.locks.owner("payments", "dev") is None
    assert platform.restored == []
    await orch.shutdown()


async def test_crash_while_promoting_still_succeeds(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    orch = build_orchestrator(settings)
    register_build(orch.storage)

    def broken_prune(service, environment, keep=None):
        raise RuntimeError("prune failed")

    monkeypatch.setattr(orch.snapshots, "prune", broken_prune)
    deployment = await _promote_and_wait(orch)

    assert deployment["state"] == "SUCCEEDED"
    assert orch.list_transitions(deployment["id"])[-1]["metadata"]["pruned"] is False
    assert orch.locks.owner("payments", "dev") is None
    await orch.shutdown()


async def test_rollback_during_approval_withdraws_the_request(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)
    await _promote_and_wait(orch)
    prod_id = await _promote(orch, environment="prod")
    await _wait_for_state(orch, prod_id, "AWAITING_APPROVAL")

    await orch.request_rollback(prod_id, actor=RELEASER)
    final = await orch.wait(prod_id, timeout=5)

    assert final["state"] == "ROLLED_BACK"
    approval = orch.get_approval(prod_id)
    assert approval["decision"] == "DENIED"
    assert approval["decidedBy"] == "user-1"
    assert platform.restored == []
    await orch.shutdown()


async def test_concurrent_promotions_to_one_target_conflict(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    platform.script_health("1.0.0", PROGRESSING)
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage, "1.0.0")
    register_build(orch.storage, "1.0.1")

    results = await asyncio.gather(_promote(orch, "1.0.0"), _promote(orch, "1.0.1"), return_exceptions=True)

    created = [item for item in results if isinstance(item, str)]
    conflicts = [item for item in results if isinstance(item, ConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 1
    assert len(orch.storage.list_deployments("payments", "dev")) == 1
    assert orch.locks.owner("payments", "dev") == created[0]
    await orch.shutdown()


async def test_promotion_cannot_skip_a_rank(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    orch = build_orchestrator(settings)
    register_build(orch.storage)
    with pytest.raises(PromotionOrderError) as excinfo:
        await _promote(orch, environment="prod")
    assert excinfo.value.code == "PROMOTION_PATH_NOT_ALLOWED"
    assert orch.storage.list_deployments() == []
    assert orch.locks.owner("payments", "prod") is None
    await orch.shutdown()


async def test_failed_lower_rank_blocks_promotion(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    platform.script_health("1.0.0", UNHEALTHY)
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)
    assert (await _promote_and_wait(orch))["state"] == "ROLLED_BACK"
    with pytest.raises(PromotionOrderError):
        await _promote(orch, environment="prod")
    await orch.shutdown()


async def test_live_version_cannot_be_promoted_again(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    orch = build_orchestrator(settings)
    register_build(orch.storage)
    await _promote_and_wait(orch)
    with pytest.raises(PromotionOrderError) as excinfo:
        await _promote(orch)
    assert excinfo.value.code == "ARTIFACT_ALREADY_LIVE"
    await orch.shutdown()


async def test_disabled_environment_is_skipped_in_the_chain(monkeypatch, tmp_path):
    environments = [
        _env("dev"),
        {"name": "qa", "order": 1, "is_enabled": False, "config": {"replicas": 1, "registry": "r", "log_level": "x"}},
        _env("prod", order=2, requires_approval=False),
    ]
    services = [{**SERVICES[0], "allowed_environments": ["dev", "qa", "prod"]}]
    settings = make_settings(monkeypatch, tmp_path, environments=environments, services=services)
    orch = build_orchestrator(settings)
    register_build(orch.storage)
    await _promote_and_wait(orch)

    with pytest.raises(PolicyError) as excinfo:
        await _promote(orch, environment="qa")
    assert excinfo.value.code == "ENVIRONMENT_DISABLED"

    prod = await _promote_and_wait(orch, environment="prod")
    assert prod["state"] == "SUCCEEDED"
    assert prod["rank"] == 2
    await orch.shutdown()


async def test_snapshot_is_recorded_before_apply(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform({("payments", "dev"): {"version": "0.9.0"}})
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)
    seen = {}

    def on_apply(spec):
        deployment = orch.storage.list_deployments("payments", "dev")[0]
        seen["state"] = deployment["state"]
        seen["snapshotRef"] = deployment["snapshotRef"]

    platform.on_apply = on_apply
    deployment = await _promote_and_wait(orch)

    assert seen["state"] == "APPLYING"
    assert seen["snapshotRef"] == deployment["snapshotRef"]
    assert orch.storage.get_snapshot(deployment["snapshotRef"])["capturedSpec"] == {"version": "0.9.0"}
    await orch.shutdown()


async def test_rollback_requests_are_idempotent(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path, RELAY_HEALTH_TIMEOUT_SECONDS="30")
    platform = FakePlatform()
    platform.script_health("1.0.0", PROGRESSING)
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)
    deployment_id = await _promote(orch)
    await _wait_for_state(orch, deployment_id, "HEALTH_CHECKING")

    first = await orch.request_rollback(deployment_id, actor=RELEASER)
    await orch.request_rollback(deployment_id, actor=RELEASER)
    assert first["rollbackRequested"] is True

    final = await orch.wait(deployment_id, timeout=5)
    assert final["state"] == "ROLLED_BACK"
    assert final["failureReason"] == "Rollback requested by user-1"
    again = await orch.request_rollback(deployment_id, actor=RELEASER)
    assert again["state"] == "ROLLED_BACK"
    assert len(platform.restored) == 1
    assert states(orch.storage, deployment_id).count("ROLLING_BACK") == 1
    await orch.shutdown()


async def test_health_timeout_is_treated_as_unhealthy(monkeypatch, tmp_path):
    environments = [_env("dev", health_check_timeout_seconds=0.1), _env("prod")]
    settings = make_settings(monkeypatch, tmp_path, environments=environments)
    platform = FakePlatform()
    platform.script_health("1.0.0", PROGRESSING)
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)

    failed = await _promote_and_wait(orch)

    assert failed["state"] == "ROLLED_BACK"
    assert failed["failureReason"] == "Health check timed out after 0.1s"
    assert failed["failures"][-1]["category"] == "TIMEOUT"
    assert len(platform.restored) == 1
    await orch.shutdown()


async def test_approval_timeout_rolls_back_without_restore(monkeypatch, tmp_path):
    environments = [_env("dev"), _env("prod", approval_timeout_seconds=0.05)]
    settings = make_settings(monkeypatch, tmp_path, environments=environments)
    platform = FakePlatform()
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)
    await _promote_and_wait(orch)

    failed = await _promote_and_wait(orch, environment="prod")

    assert failed["state"] == "ROLLED_BACK"
    assert failed["failures"][-1]["category"] == "APPROVAL"
    assert orch.get_approval(failed["id"])["decision"] == "TIMED_OUT"
    assert platform.restored == []
    assert [spec["environment"] for spec in platform.applied] == ["dev"]
    last = orch.list_transitions(failed["id"])[-1]
    assert last["metadata"]["restored"] is False
    with pytest.raises(InvalidStateError):
        orch.approve(failed["id"], APPROVER)
    await orch.shutdown()


async def test_denied_approval_rolls_back(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)
    await _promote_and_wait(orch)
    prod_id = await _promote(orch, environment="prod")
    await _wait_for_state(orch, prod_id, "AWAITING_APPROVAL")

    orch.deny(prod_id, APPROVER, comment="freeze week")
    failed = await orch.wait(prod_id, timeout=5)

    assert failed["state"] == "ROLLED_BACK"
    assert failed["failureReason"] == "Approval denied by approver-1"
    assert orch.get_approval(prod_id)["comment"] == "freeze week"
    assert platform.restored == []
    await orch.shutdown()


async def test_approval_requires_awaiting_state(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    orch = build_orchestrator(settings)
    register_build(orch.storage)
    deployment = await _promote_and_wait(orch)
    with pytest.raises(InvalidStateError):
        orch.approve(deployment["id"], APPROVER)
    await orch.shutdown()


async def test_render_failure_never_touches_platform(monkeypatch, tmp_path):
    services = [{**SERVICES[0], "manifest": {"image": "${registry}/payments", "replicas": "${missing_replicas}"}}]
    settings = make_settings(monkeypatch, tmp_path, services=services)
    platform = FakePlatform()
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)

    failed = await _promote_and_wait(orch)

    assert failed["state"] == "ROLLED_BACK"
    assert failed["failureReason"].startswith("Render failed: Manifest references undefined keys")
    assert "missing_replicas" in failed["failureReason"]
    assert failed["failures"][-1]["category"] == "CONFIG"
    assert platform.applied == []
    assert platform.restored == []
    await orch.shutdown()


async def test_snapshot_failure_never_applies(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    platform.capture_error = transient()
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)

    failed = await _promote_and_wait(orch)

    assert failed["state"] == "ROLLED_BACK"
    assert failed["snapshotRef"] is None
    assert failed["failures"][-1]["category"] == "INFRASTRUCTURE"
    assert [call[0] for call in platform.calls] == ["capture"]
    await orch.shutdown()


async def test_transient_apply_errors_are_retried(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    platform.fail_apply(transient())
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)

    deployment = await _promote_and_wait(orch)

    assert deployment["state"] == "SUCCEEDED"
    applied = [item for item in orch.list_transitions(deployment["id"]) if item["toState"] == "HEALTH_CHECKING"]
    assert applied[0]["metadata"] == {"attempts": 2}
    assert deployment["applyHandle"] == "rollout-1"
    await orch.shutdown()


async def test_permanent_apply_error_rolls_back(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform()
    platform.fail_apply(permanent())
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)

    failed = await _promote_and_wait(orch)

    assert failed["state"] == "ROLLED_BACK"
    assert failed["failureReason"] == "Apply failed: HTTP 422 from platform"
    assert failed["failures"][-1]["category"] == "VALIDATION"
    assert len([call for call in platform.calls if call[0] == "apply"]) == 1
    assert len(platform.restored) == 1
    await orch.shutdown()


async def test_manual_rollback_of_live_deployment(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    platform = FakePlatform({("payments", "dev"): {"version": "0.9.0"}})
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)
    deployment = await _promote_and_wait(orch)

    requested = await orch.request_rollback(deployment["id"], actor=RELEASER)
    assert requested["rollbackRequested"] is True
    assert requested["rollbackRequestedBy"] == "user-1"
    final = await orch.wait(deployment["id"], timeout=5)

    assert final["state"] == "ROLLED_BACK"
    assert states(orch.storage, deployment["id"])[-3:] == ["SUCCEEDED", "ROLLING_BACK", "ROLLED_BACK"]
    assert platform.state[("payments", "dev")] == {"version": "0.9.0"}
    assert orch.list_transitions(deployment["id"])[-2]["metadata"]["manual"] is True
    assert orch.locks.owner("payments", "dev") is None
    await orch.shutdown()


async def test_superseded_deployment_cannot_be_rolled_back(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    orch = build_orchestrator(settings)
    register_build(orch.storage, "1.0.0")
    register_build(orch.storage, "1.1.0")
    first = await _promote_and_wait(orch, "1.0.0")
    await _promote_and_wait(orch, "1.1.0")

    with pytest.raises(InvalidStateError):
        await orch.request_rollback(first["id"], actor=RELEASER)
    assert orch.get_status(first["id"])["state"] == "SUCCEEDED"
    await orch.shutdown()


async def test_shutdown_and_recover_resumes_health_check(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path, RELAY_HEALTH_TIMEOUT_SECONDS="30")
    platform = FakePlatform()
    platform.script_health("1.0.0", PROGRESSING)
    orch = build_orchestrator(settings, platform)
    register_build(orch.storage)
    deployment_id = await _promote(orch)
    await _wait_for_state(orch, deployment_id, "HEALTH_CHECKING")
    await orch.shutdown()
    assert orch.get_status(deployment_id)["state"] == "HEALTH_CHECKING"

    platform.script_health("1.0.0", "HEALTHY")
    restarted = build_orchestrator(settings, platform)
    assert await restarted.recover() == [deployment_id]
    assert restarted.locks.owner("payments", "dev") == deployment_id

    final = await restarted.wait(deployment_id, timeout=5)
    assert final["state"] == "SUCCEEDED"
    assert len([call for call in platform.calls if call[0] == "apply"]) == 1
    assert states(restarted.storage, deployment_id).count("HEALTH_CHECKING") == 1
    await restarted.shutdown()


async def test_recover_finishes_interrupted_rollback(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    storage = build_storage(settings)
    snapshot = storage.insert_snapshot("payments", "dev", {"version": "0.9.0"})
    storage.insert_deployment(
        {
            "id": "dep-crashed",
            "service": "payments",
            "environment": "dev",
            "rank": 0,
            "version": "1.0.0",
            "artifact": {"service": "payments", "version": "1.0.0", "digest": "sha256:" + "a" * 64, "createdAt": ""},
            "requestedBy": "user-1",
        }
    )
    storage.record_transition("dep-crashed", "PENDING", "SNAPSHOTTING")
    storage.record_transition("dep-crashed", "SNAPSHOTTING", "RENDERING", snapshot_ref=snapshot["id"])
    storage.record_transition("dep-crashed", "RENDERING", "APPLYING")
    storage.record_transition("dep-crashed", "APPLYING", "ROLLING_BACK", failure_reason="Apply failed: boom")

    platform = FakePlatform()
    orch = build_orchestrator(settings, platform)
    assert await orch.recover() == ["dep-crashed"]
    final = await orch.wait("dep-crashed", timeout=5)

    assert final["state"] == "ROLLED_BACK"
    assert final["failureReason"] == "Apply failed: boom"
    assert platform.restored == [("payments", "dev", {"version": "0.9.0"})]
    assert orch.locks.owner("payments", "dev") is None
    await orch.shutdown()


async def test_notification_failures_do_not_block(monkeypatch, tmp_path):
    class BrokenSink:
        def send(self, event):
            raise RuntimeError("sink down")

    settings = make_settings(monkeypatch, tmp_path)
    orch = build_orchestrator(settings, sink=BrokenSink())
    register_build(orch.storage)
    deployment = await _promote_and_wait(orch)
    assert deployment["state"] == "SUCCEEDED"
    await orch.shutdown()


async def test_mutations_disabled_blocks_commands(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path, RELAY_MUTATIONS_DISABLED="1")
    orch = build_orchestrator(settings)
    register_build(orch.storage)
    with pytest.raises(MutationsDisabledError):
        await _promote(orch)
    assert orch.storage.list_deployments() == []
    await orch.shutdown()


async def test_unknown_deployment_queries(monkeypatch, tmp_path):
    settings = make_settings(monkeypatch, tmp_path)
    orch = build_orchestrator(settings)
    with pytest.raises(PolicyError) as excinfo:
        orch.get_status("missing")
    assert excinfo.value.status_code == 404
    with pytest.raises(PolicyError):
        orch.get_target_status("payments", "dev")
    with pytest.raises(PolicyError) as excinfo:
        await _promote(orch)
    assert excinfo.value.code == "ARTIFACT_NOT_FOUND"
    await orch.shutdown()
