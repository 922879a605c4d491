import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from config import Settings
from models import ApprovalDecision
from observability import log_event
from policy import ApprovalDeniedError, ApprovalTimeoutError, InvalidStateError, NotFoundError


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class ApprovalGate:
    def __init__(self, storage, settings: Settings) -> None:
        self.storage = storage
        self.settings = settings
        self._events: Dict[str, asyncio.Event] = {}

    def open(self, deployment_id: str, timeout_seconds: Optional[float] = None) -> dict:
        existing = self.storage.get_approval(deployment_id)
        if existing:
            return existing
        timeout_seconds = timeout_seconds or self.settings.default_approval_timeout_seconds
        requested_at = datetime.now(timezone.utc)
        approval = self.storage.insert_approval(
            {
                "deploymentId": deployment_id,
                "requestedAt": _iso(requested_at),
                "expiresAt": _iso(requested_at + timedelta(seconds=timeout_seconds)),
            }
        )
        log_event("approval_requested", deployment_id=deployment_id, expires_at=approval["expiresAt"])
        return approval

    def decide(
        self, deployment_id: str, decision: ApprovalDecision, actor_id: Optional[str], comment: Optional[str] = None
    ) -> dict:
        if not self.storage.get_approval(deployment_id):
            raise NotFoundError(f"No approval request for deployment {deployment_id}")
        if not self.storage.decide_approval(deployment_id, decision.value, actor_id, comment):
            raise InvalidStateError(f"Approval for deployment {deployment_id} is already decided")
        log_event("approval_decided", deployment_id=deployment_id, decision=decision.value, actor_id=actor_id)
        event = self._events.get(deployment_id)
        if event is not None:
            event.set()
        return self.storage.get_approval(deployment_id)

    def withdraw(self, deployment_id: str, actor_id: Optional[str]) -> bool:
        """Close a pending request as DENIED because the deployment is being rolled back."""
        withdrawn = self.storage.decide_approval(
            deployment_id, ApprovalDecision.DENIED.value, actor_id, "Withdrawn by rollback request"
        )
        if withdrawn:
            log_event("approval_withdrawn", deployment_id=deployment_id, actor_id=actor_id)
        return withdrawn

    @staticmethod
    def _settle(approval: dict) -> dict:
        decision = ApprovalDecision(approval["decision"])
        if decision == ApprovalDecision.TIMED_OUT:
            raise ApprovalTimeoutError("Approval timed out before a decision was made")
        if decision == ApprovalDecision.DENIED:
            raise ApprovalDeniedError(f"Approval denied by {approval.get('decidedBy') or 'approver'}")
        return approval

    async def await_decision(self, deployment_id: str, cancel_event: asyncio.Event) -> Optional[dict]:
        """Suspend until the request is decided or expires.

        Returns the approved request, or None when `cancel_event` fires first.
        A denial raises ApprovalDeniedError; expiry is recorded as TIMED_OUT and
        raises ApprovalTimeoutError.
        """
        event = self._events.setdefault(deployment_id, asyncio.Event())
        try:
            while True:
                event.clear()
                approval = self.storage.get_approval(deployment_id)
                if approval is None:
                    raise NotFoundError(f"No approval request for deployment {deployment_id}")
                if approval["decision"] != ApprovalDecision.PENDING.value:
                    return self._settle(approval)
                remaining = (_parse(approval["expiresAt"]) - datetime.now(timezone.utc)).total_seconds()
                if remaining <= 0:
                    if self.storage.decide_approval(deployment_id, ApprovalDecision.TIMED_OUT.value, None):
                        log_event("approval_timed_out", deployment_id=deployment_id)
                    continue
                if cancel_event.is_set():
                    return None
                waiters = [asyncio.ensure_future(event.wait()), asyncio.ensure_future(cancel_event.wait())]
                try:
                    await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    for waiter in waiters:
                        waiter.cancel()
        finally:
            self._events.pop(deployment_id, None)
