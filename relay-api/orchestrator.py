import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from platform_adapter.adapter import PlatformError, classify_failure
from platform_adapter.redaction import redact_text

from approvals import ApprovalGate
from artifacts import build_artifact_source
from config import Settings
from delivery_state import (
    APPLIED,
    APPROVED,
    HEALTHY,
    PROMOTED,
    RENDERED,
    ROLLBACK_SOURCE_STATES,
    SNAPSHOT_CAPTURED,
    START,
    advance,
    is_terminal,
)
from executor import RolloutExecutor
from health import HealthValidator
from locks import TargetLocks
from models import Actor, ApprovalDecision, Artifact, DeploymentState, HealthVerdict, RenderedSpec
from notifications import Notifier, build_event, build_notifier
from observability import log_event
from policy import (
    ApprovalDeniedError,
    Guardrails,
    InvalidStateError,
    NotFoundError,
    PolicyError,
    RollbackFailedError,
    SnapshotError,
)
from renderer import render
from rollback import RollbackController
from snapshots import SnapshotManager


logger = logging.getLogger("relay.orchestrator")


class Orchestrator:
    """Runs each deployment as one asyncio task driven by the ledger state."""

    def __init__(
        self,
        storage,
        platform,
        settings: Settings,
        notifier: Optional[Notifier] = None,
        artifact_source=None,
    ) -> None:
        self.storage = storage
        self.settings = settings
        self.guardrails = Guardrails(storage, settings)
        self.artifacts = artifact_source or build_artifact_source(settings, storage)
        self.locks = TargetLocks()
        self.notifier = notifier or build_notifier(settings)
        self.snapshots = SnapshotManager(storage, platform, settings)
        self.executor = RolloutExecutor(platform, settings)
        self.health = HealthValidator(platform, settings)
        self.approvals = ApprovalGate(storage, settings)
        self.rollbacks = RollbackController(storage, self.snapshots, self.notifier)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._steps = {
            DeploymentState.PENDING: self._start_pipeline,
            DeploymentState.SNAPSHOTTING: self._snapshot,
            DeploymentState.RENDERING: self._render,
            DeploymentState.AWAITING_APPROVAL: self._await_approval,
            DeploymentState.APPLYING: self._apply,
            DeploymentState.HEALTH_CHECKING: self._check_health,
            DeploymentState.PROMOTING: self._promote,
            DeploymentState.ROLLING_BACK: self._resume_rollback,
        }

    # Commands

    async def request_promotion(
        self,
        service: str,
        version: str,
        environment: str,
        change_summary: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> str:
        self.guardrails.require_mutations_enabled()
        self.guardrails.validate_version(version)
        entry = self.guardrails.validate_service(service)
        target = self.guardrails.validate_environment(environment, entry)
        artifact = await asyncio.to_thread(self.artifacts.resolve, service, version)

        # No awaits from here until the task is scheduled: order check, lock and insert are one step.
        self.guardrails.enforce_promotion_order(service, version, target)
        deployment_id = str(uuid.uuid4())
        self.locks.acquire(service, target.name, deployment_id)
        try:
            deployment = self.storage.insert_deployment(
                {
                    "id": deployment_id,
                    "service": service,
                    "environment": target.name,
                    "rank": target.order,
                    "version": version,
                    "artifact": artifact.model_dump(),
                    "changeSummary": change_summary,
                    "requestedBy": actor.actor_id if actor else None,
                }
            )
        except PolicyError:
            self.locks.release(service, target.name, deployment_id)
            raise
        log_event(
            "promotion_requested",
            deployment_id=deployment_id,
            service=service,
            environment=target.name,
            version=version,
            actor_id=actor.actor_id if actor else None,
        )
        self.notifier.publish(build_event(deployment, None))
        self._schedule(deployment_id)
        return deployment_id

    async def request_rollback(self, deployment_id: str, actor: Optional[Actor] = None) -> dict:
        self.guardrails.require_mutations_enabled()
        deployment = self.get_status(deployment_id)
        state = DeploymentState(deployment["state"])
        actor_id = actor.actor_id if actor else None
        if state in (DeploymentState.ROLLING_BACK, DeploymentState.ROLLED_BACK):
            return deployment
        if state == DeploymentState.ROLLBACK_FAILED:
            raise RollbackFailedError(f"Deployment {deployment_id} failed to roll back; manual intervention is required")
        if state == DeploymentState.SUCCEEDED:
            latest = self.storage.find_latest_deployment(deployment["service"], deployment["environment"])
            if not latest or latest["id"] != deployment_id:
                raise InvalidStateError(
                    f"Deployment {deployment_id} is no longer the latest on {deployment['service']}:{deployment['environment']}"
                )
            self.locks.acquire(deployment["service"], deployment["environment"], deployment_id)
            self.storage.mark_rollback_requested(deployment_id, actor_id)
            self._cancel_event(deployment_id).set()
            self._schedule(deployment_id)
        else:
            self.storage.mark_rollback_requested(deployment_id, actor_id)
            self._cancel_event(deployment_id).set()
        log_event("rollback_requested", deployment_id=deployment_id, state=state.value, actor_id=actor_id)
        return self.get_status(deployment_id)

    def approve(self, deployment_id: str, actor: Actor, comment: Optional[str] = None) -> dict:
        return self._decide(deployment_id, ApprovalDecision.APPROVED, actor, comment)

    def deny(self, deployment_id: str, actor: Actor, comment: Optional[str] = None) -> dict:
        return self._decide(deployment_id, ApprovalDecision.DENIED, actor, comment)

    def _decide(self, deployment_id: str, decision: ApprovalDecision, actor: Actor, comment: Optional[str]) -> dict:
        self.guardrails.require_mutations_enabled()
        deployment = self.get_status(deployment_id)
        if deployment["state"] != DeploymentState.AWAITING_APPROVAL.value:
            raise InvalidStateError(f"Deployment {deployment_id} is {deployment['state']}, not awaiting approval")
        return self.approvals.decide(deployment_id, decision, actor.actor_id, comment)

    # Queries

    def get_status(self, deployment_id: str) -> dict:
        deployment = self.storage.get_deployment(deployment_id)
        if not deployment:
            raise NotFoundError(f"Deployment {deployment_id} not found")
        return deployment

    def get_target_status(self, service: str, environment: str) -> dict:
        deployment = self.storage.find_latest_deployment(service, environment)
        if not deployment:
            raise NotFoundError(f"No deployments for {service} in {environment}")
        return deployment

    def list_transitions(self, deployment_id: str) -> List[dict]:
        self.get_status(deployment_id)
        return self.storage.list_transitions(deployment_id)

    def get_approval(self, deployment_id: str) -> dict:
        self.get_status(deployment_id)
        approval = self.storage.get_approval(deployment_id)
        if not approval:
            raise NotFoundError(f"No approval request for deployment {deployment_id}")
        return approval

    # Lifecycle

    async def recover(self) -> List[str]:
        resumed = []
        for deployment in self.storage.list_non_terminal_deployments():
            deployment_id = deployment["id"]
            self.locks.acquire(deployment["service"], deployment["environment"], deployment_id)
            if deployment.get("rollbackRequested"):
                self._cancel_event(deployment_id).set()
            self._schedule(deployment_id)
            log_event(
                "deployment_resumed",
                deployment_id=deployment_id,
                service=deployment["service"],
                environment=deployment["environment"],
                state=deployment["state"],
            )
            resumed.append(deployment_id)
        return resumed

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.notifier.drain()
        self._tasks.clear()
        self._cancel_events.clear()
        self.locks.clear()

    async def wait(self, deployment_id: str, timeout: Optional[float] = None) -> dict:
        task = self._tasks.get(deployment_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return self.get_status(deployment_id)

    # Pipeline

    def _cancel_event(self, deployment_id: str) -> asyncio.Event:
        return self._cancel_events.setdefault(deployment_id, asyncio.Event())

    def _schedule(self, deployment_id: str) -> None:
        existing = self._tasks.get(deployment_id)
        if existing is not None and not existing.done():
            return
        task = asyncio.create_task(self._run(deployment_id), name=f"deployment-{deployment_id}")
        self._tasks[deployment_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(deployment_id, None))

    async def _run(self, deployment_id: str) -> None:
        deployment = self.storage.get_deployment(deployment_id)
        try:
            await self._pipeline(deployment)
        except asyncio.CancelledError:
            log_event("deployment_suspended", deployment_id=deployment_id)
            raise
        except Exception:
            logger.exception("pipeline.crashed deployment_id=%s", deployment_id)
            await self._abort(deployment_id)
        finally:
            current = self.storage.get_deployment(deployment_id)
            if current and is_terminal(current["state"]):
                self.locks.release(current["service"], current["environment"], deployment_id)
                self._cancel_events.pop(deployment_id, None)

    async def _abort(self, deployment_id: str) -> Optional[dict]:
        current = self.storage.get_deployment(deployment_id)
        if not current:
            return None
        state = DeploymentState(current["state"])
        if state in ROLLBACK_SOURCE_STATES:
            return await self._fail(current, "Deployment failed unexpectedly")
        if state == DeploymentState.ROLLING_BACK:
            return self.rollbacks.mark_failed(current, "Rollback crashed before it could finish")
        if state == DeploymentState.PROMOTING:
            # The rollout already passed its health gate; only retention work is left.
            return self._advance(current, PROMOTED, metadata={"pruned": False})
        return current

    async def _pipeline(self, deployment: dict) -> dict:
        while True:
            state = DeploymentState(deployment["state"])
            if state == DeploymentState.SUCCEEDED and self._cancel_event(deployment["id"]).is_set():
                deployment = await self.rollbacks.rollback(deployment, self._rollback_reason(deployment), manual=True)
                continue
            if is_terminal(state):
                return deployment
            deployment = await self._steps[state](deployment)

    def _advance(self, deployment: dict, event: str, gated: bool = False, metadata: Optional[dict] = None, **fields) -> dict:
        from_state = deployment["state"]
        updated = self.storage.record_transition(
            deployment["id"], from_state, advance(from_state, event, gated), metadata, **fields
        )
        self.notifier.publish(build_event(updated, from_state))
        return updated

    async def _fail(self, deployment: dict, reason: str, manual: bool = False) -> dict:
        failures = list(deployment.get("failures") or []) + [classify_failure(reason)]
        return await self.rollbacks.rollback(deployment, redact_text(reason), failures, manual=manual)

    def _rollback_requested(self, deployment: dict) -> bool:
        return self._cancel_event(deployment["id"]).is_set()

    def _rollback_reason(self, deployment: dict) -> str:
        current = self.storage.get_deployment(deployment["id"]) or deployment
        actor_id = current.get("rollbackRequestedBy")
        return f"Rollback requested by {actor_id}" if actor_id else "Rollback requested"

    def _timeout(self, deployment: dict, field: str, default: float) -> float:
        environment = self.storage.get_environment(deployment["environment"])
        value = getattr(environment, field) if environment else None
        return value or default

    async def _start_pipeline(self, deployment: dict) -> dict:
        return self._advance(deployment, START)

    async def _snapshot(self, deployment: dict) -> dict:
        if self._rollback_requested(deployment):
            return await self._fail(deployment, self._rollback_reason(deployment), manual=True)
        try:
            snapshot = await asyncio.to_thread(self.snapshots.capture, deployment["service"], deployment["environment"])
        except SnapshotError as exc:
            return await self._fail(deployment, exc.message)
        return self._advance(deployment, SNAPSHOT_CAPTURED, metadata={"snapshotRef": snapshot["id"]}, snapshot_ref=snapshot["id"])

    async def _render(self, deployment: dict) -> dict:
        if self._rollback_requested(deployment):
            return await self._fail(deployment, self._rollback_reason(deployment), manual=True)
        service = self.storage.get_service(deployment["service"])
        environment = self.storage.get_environment(deployment["environment"])
        if service is None or environment is None:
            return await self._fail(deployment, "Render failed: service or environment is no longer registered")
        try:
            spec = render(Artifact.model_validate(deployment["artifact"]), environment, service.manifest)
        except PolicyError as exc:
            errors = getattr(exc, "errors", [])
            detail = f"{exc.message} ({'; '.join(errors)})" if errors else exc.message
            return await self._fail(deployment, f"Render failed: {detail}")
        return self._advance(
            deployment,
            RENDERED,
            gated=environment.requires_approval,
            rendered_spec=spec.model_dump(exclude_none=True),
        )

    async def _await_approval(self, deployment: dict) -> dict:
        timeout = self._timeout(deployment, "approval_timeout_seconds", self.settings.default_approval_timeout_seconds)
        self.approvals.open(deployment["id"], timeout)
        try:
            approval = await self.approvals.await_decision(deployment["id"], self._cancel_event(deployment["id"]))
        except ApprovalDeniedError as exc:
            return await self._fail(deployment, exc.message)
        if approval is None:
            current = self.storage.get_deployment(deployment["id"]) or deployment
            self.approvals.withdraw(deployment["id"], current.get("rollbackRequestedBy"))
            return await self._fail(deployment, self._rollback_reason(deployment), manual=True)
        return self._advance(deployment, APPROVED, metadata={"approvedBy": approval.get("decidedBy")})

    async def _apply(self, deployment: dict) -> dict:
        if self._rollback_requested(deployment):
            return await self._fail(deployment, self._rollback_reason(deployment), manual=True)
        if not deployment.get("snapshotRef"):
            return await self._fail(deployment, "Snapshot missing before apply")
        spec = RenderedSpec.model_validate(deployment["renderedSpec"])
        try:
            result = await self.executor.apply(spec)
        except PlatformError as exc:
            return await self._fail(deployment, f"Apply failed: {exc}")
        return self._advance(deployment, APPLIED, metadata={"attempts": result.attempts}, apply_handle=result.handle)

    async def _check_health(self, deployment: dict) -> dict:
        timeout = self._timeout(deployment, "health_check_timeout_seconds", self.settings.default_health_timeout_seconds)
        verdict = await self.health.validate(deployment["applyHandle"], timeout, self._cancel_event(deployment["id"]))
        if verdict == HealthVerdict.HEALTHY:
            return self._advance(deployment, HEALTHY)
        if verdict == HealthVerdict.CANCELED:
            return await self._fail(deployment, self._rollback_reason(deployment), manual=True)
        if verdict == HealthVerdict.TIMED_OUT:
            return await self._fail(deployment, f"Health check timed out after {timeout:g}s")
        return await self._fail(deployment, "Rollout reported unhealthy instances")

    async def _promote(self, deployment: dict) -> dict:
        await asyncio.to_thread(self.snapshots.prune, deployment["service"], deployment["environment"])
        return self._advance(deployment, PROMOTED)

    async def _resume_rollback(self, deployment: dict) -> dict:
        reason = deployment.get("failureReason") or self._rollback_reason(deployment)
        return await self.rollbacks.rollback(deployment, reason)
