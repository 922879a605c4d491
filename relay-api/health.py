import asyncio
import logging

from platform_adapter.adapter import HEALTHY, UNHEALTHY, PermanentPlatformError, TransientPlatformError

from config import Settings
from models import HealthVerdict
from observability import log_event


class HealthValidator:
    def __init__(self, platform, settings: Settings) -> None:
        self.platform = platform
        self.settings = settings

    async def _query(self, handle: str, cancel_event: asyncio.Event, remaining: float):
        """Run one health query, racing it against the deadline and `cancel_event`.

        Returns None when the query was abandoned. The worker thread is left to
        finish on its own and its result is dropped.
        """
        query = asyncio.ensure_future(asyncio.to_thread(self.platform.query_health, handle))
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {query, cancel_waiter}, timeout=max(remaining, 0), return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in (query, cancel_waiter):
                if not waiter.done():
                    waiter.cancel()
        if query not in done:
            return None
        return query.result()

    async def validate(self, handle: str, timeout: float, cancel_event: asyncio.Event) -> HealthVerdict:
        """Poll rollout health until it is stably healthy, unhealthy, timed out or cancelled.

        Healthy means the platform reported HEALTHY on every poll for at least the
        configured dwell. Transient query errors reset the dwell. A query still in
        flight at the deadline or on cancellation is abandoned.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        healthy_since = None
        while True:
            if cancel_event.is_set():
                return HealthVerdict.CANCELED
            status = None
            result = {}
            try:
                answer = await self._query(handle, cancel_event, deadline - loop.time())
            except TransientPlatformError as exc:
                log_event("health_query_failed", level=logging.WARNING, handle=handle, error=str(exc))
            except PermanentPlatformError as exc:
                log_event("health_query_rejected", level=logging.WARNING, handle=handle, error=str(exc))
                return HealthVerdict.UNHEALTHY
            else:
                if answer is None:
                    if cancel_event.is_set():
                        return HealthVerdict.CANCELED
                    log_event("health_timed_out", level=logging.WARNING, handle=handle, timeout_seconds=timeout)
                    return HealthVerdict.TIMED_OUT
                result = answer
                status = result.get("status")
            now = loop.time()
            if status == UNHEALTHY:
                log_event("health_unhealthy", handle=handle, detail=result.get("detail"))
                return HealthVerdict.UNHEALTHY
            if status == HEALTHY:
                if healthy_since is None:
                    healthy_since = now
                if now - healthy_since >= self.settings.health_dwell_seconds:
                    return HealthVerdict.HEALTHY
            else:
                healthy_since = None
            if now >= deadline:
                log_event("health_timed_out", level=logging.WARNING, handle=handle, timeout_seconds=timeout)
                return HealthVerdict.TIMED_OUT
            wait = min(self.settings.health_poll_interval_seconds, deadline - now)
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=max(wait, 0))
            except asyncio.TimeoutError:
                continue
            return HealthVerdict.CANCELED
