import contextvars
import logging
from typing import Any, Mapping

from platform_adapter.redaction import redact_mapping, redact_text


request_id_ctx = contextvars.ContextVar("request_id", default="")
_logger = logging.getLogger("relay.obs")


def get_request_id() -> str:
    return request_id_ctx.get() or ""


def log_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one sorted key=value line on the relay.obs logger."""
    payload = {"event": event, "request_id": get_request_id()}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, str):
            payload[key] = redact_text(value)
        elif isinstance(value, Mapping):
            payload[key] = redact_mapping(value)
        else:
            payload[key] = value
    parts = [f"{key}={payload[key]}" for key in sorted(payload.keys())]
    _logger.log(level, " ".join(parts))
