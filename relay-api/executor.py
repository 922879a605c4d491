import asyncio
import logging
from dataclasses import dataclass

from platform_adapter.adapter import TransientPlatformError

from config import Settings
from models import RenderedSpec
from observability import log_event


@dataclass
class ApplyResult:
    handle: str
    attempts: int


class RolloutExecutor:
    def __init__(self, platform, settings: Settings, sleep=asyncio.sleep) -> None:
        self.platform = platform
        self.settings = settings
        self._sleep = sleep

    async def apply(self, spec: RenderedSpec) -> ApplyResult:
        """Apply a rendered spec, retrying transient platform errors with backoff.

        PermanentPlatformError propagates on the first attempt. The platform call
        runs in a worker thread and finishes even if the awaiting task is cancelled.
        """
        max_attempts = max(1, self.settings.apply_max_attempts)
        delay = self.settings.apply_backoff_seconds
        payload = spec.model_dump(exclude_none=True)
        attempt = 0
        while True:
            attempt += 1
            try:
                handle = await asyncio.to_thread(self.platform.apply_spec, payload)
            except TransientPlatformError as exc:
                if attempt >= max_attempts:
                    log_event(
                        "apply_retries_exhausted",
                        level=logging.WARNING,
                        service=spec.service,
                        environment=spec.environment,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise
                log_event(
                    "apply_retry",
                    service=spec.service,
                    environment=spec.environment,
                    attempt=attempt,
                    backoff_seconds=delay,
                    error=str(exc),
                )
                await self._sleep(delay)
                delay *= 2
                continue
            log_event("apply_succeeded", service=spec.service, environment=spec.environment, attempts=attempt)
            return ApplyResult(handle=handle, attempts=attempt)
