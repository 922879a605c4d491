import asyncio
import logging
from typing import List, Optional

import requests
from platform_adapter.redaction import redact_url

from config import Settings
from delivery_state import severity_for


logger = logging.getLogger("relay.notify")

_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "critical": logging.CRITICAL}


def build_event(deployment: dict, from_state: Optional[str]) -> dict:
    return {
        "event": "deployment.transition",
        "deploymentId": deployment["id"],
        "service": deployment["service"],
        "environment": deployment["environment"],
        "version": deployment["version"],
        "fromState": from_state,
        "toState": deployment["state"],
        "severity": severity_for(deployment["state"]),
        "failureReason": deployment.get("failureReason"),
        "timestamp": deployment["updatedAt"],
    }


class LoggingSink:
    def send(self, event: dict) -> None:
        logger.log(
            _LEVELS.get(event.get("severity"), logging.INFO),
            "notify deployment_id=%s service=%s environment=%s from_state=%s to_state=%s severity=%s",
            event.get("deploymentId"),
            event.get("service"),
            event.get("environment"),
            event.get("fromState"),
            event.get("toState"),
            event.get("severity"),
        )


class WebhookSink:
    def __init__(self, url: str, timeout_seconds: float = 5.0) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds

    def send(self, event: dict) -> None:
        response = requests.post(self.url, json=event, timeout=self.timeout_seconds)
        response.raise_for_status()


class Notifier:
    """Best-effort fan-out of deployment events to sinks."""

    def __init__(self, sinks: List) -> None:
        self.sinks = sinks
        self._pending: set = set()

    def notify(self, event: dict) -> None:
        for sink in self.sinks:
            try:
                sink.send(event)
            except Exception as exc:
                logger.warning(
                    "notify.failed sink=%s deployment_id=%s error=%s",
                    type(sink).__name__,
                    event.get("deploymentId"),
                    exc,
                )

    def publish(self, event: dict) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.notify(event)
            return
        future = loop.run_in_executor(None, self.notify, event)
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending))


def build_notifier(settings: Settings) -> Notifier:
    sinks: list = [LoggingSink()]
    if settings.notification_webhook_url:
        logger.info("notify.webhook configured url=%s", redact_url(settings.notification_webhook_url))
        sinks.append(WebhookSink(settings.notification_webhook_url, settings.notification_timeout_seconds))
    return Notifier(sinks)
