import asyncio
import logging
from typing import List, Optional

from platform_adapter.adapter import classify_failure

from delivery_state import APPLYING, RESTORE_FAILED, RESTORED, ROLLBACK, ROLLING_BACK, advance
from notifications import build_event
from observability import log_event


class RollbackController:
    def __init__(self, storage, snapshots, notifier) -> None:
        self.storage = storage
        self.snapshots = snapshots
        self.notifier = notifier

    def _record(self, deployment: dict, event: str, metadata: dict, **fields) -> dict:
        from_state = deployment["state"]
        updated = self.storage.record_transition(
            deployment["id"], from_state, advance(from_state, event), metadata, **fields
        )
        self.notifier.publish(build_event(updated, from_state))
        return updated

    async def rollback(
        self,
        deployment: dict,
        reason: str,
        failures: Optional[List[dict]] = None,
        manual: bool = False,
    ) -> dict:
        """Drive a deployment through ROLLING_BACK to a terminal state.

        The target is restored from the deployment's snapshot only when the
        deployment reached APPLYING; earlier failures left it untouched.
        Re-running on a deployment already in ROLLING_BACK repeats the restore.
        """
        if deployment["state"] != ROLLING_BACK.value:
            fields = {"failure_reason": reason}
            if failures is not None:
                fields["failures"] = failures
            deployment = self._record(deployment, ROLLBACK, {"reason": reason, "manual": manual}, **fields)
        if not self.storage.has_reached_state(deployment["id"], APPLYING):
            return self._record(deployment, RESTORED, {"restored": False, "note": "target was not modified"})
        try:
            await asyncio.to_thread(self.snapshots.restore, deployment.get("snapshotRef"))
        except Exception as exc:
            return self.mark_failed(deployment, str(exc))
        return self._record(deployment, RESTORED, {"restored": True, "snapshotRef": deployment.get("snapshotRef")})

    def mark_failed(self, deployment: dict, error: str) -> dict:
        """Record ROLLBACK_FAILED for a deployment in ROLLING_BACK. It is never retried."""
        log_event(
            "rollback_failed",
            level=logging.CRITICAL,
            deployment_id=deployment["id"],
            service=deployment["service"],
            environment=deployment["environment"],
            error=error,
        )
        failure = classify_failure(error, is_rollback=True)
        return self._record(
            deployment,
            RESTORE_FAILED,
            {"restored": False, "error": failure["detail"]},
            failure_reason="Rollback could not restore the snapshot",
            failures=list(deployment.get("failures") or []) + [failure],
        )
