import logging
from typing import Optional

from platform_adapter.adapter import PlatformError
from platform_adapter.redaction import redact_text

from config import Settings
from observability import log_event
from policy import SnapshotError


class SnapshotManager:
    def __init__(self, storage, platform, settings: Settings) -> None:
        self.storage = storage
        self.platform = platform
        self.settings = settings

    def capture(self, service: str, environment: str) -> dict:
        try:
            captured = self.platform.capture_state(service, environment)
        except PlatformError as exc:
            log_event(
                "snapshot_capture_failed",
                level=logging.WARNING,
                service=service,
                environment=environment,
                error=str(exc),
            )
            raise SnapshotError(f"Snapshot capture failed: {redact_text(str(exc))}") from exc
        snapshot = self.storage.insert_snapshot(service, environment, captured)
        log_event("snapshot_captured", service=service, environment=environment, snapshot_id=snapshot["id"])
        return snapshot

    def restore(self, snapshot_ref: Optional[str]) -> dict:
        """Push a captured state back to the platform. Restores are idempotent."""
        snapshot = self.storage.get_snapshot(snapshot_ref) if snapshot_ref else None
        if not snapshot:
            raise SnapshotError(f"Snapshot {snapshot_ref} is not available")
        self.platform.restore_state(snapshot["service"], snapshot["environment"], snapshot["capturedSpec"])
        log_event(
            "snapshot_restored",
            service=snapshot["service"],
            environment=snapshot["environment"],
            snapshot_id=snapshot["id"],
        )
        return snapshot

    def prune(self, service: str, environment: str, keep: Optional[int] = None) -> int:
        keep = self.settings.snapshot_retention if keep is None else keep
        removed = self.storage.prune_snapshots(service, environment, keep)
        if removed:
            log_event("snapshot_pruned", service=service, environment=environment, removed=removed)
        return removed
