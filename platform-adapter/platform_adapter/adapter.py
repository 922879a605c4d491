import json
import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from platform_adapter.redaction import redact_text, redact_url


TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}

HEALTHY = "HEALTHY"
UNHEALTHY = "UNHEALTHY"
PROGRESSING = "PROGRESSING"


class PlatformError(Exception):
    transient = False

    def __init__(self, message: str, status_code: Optional[int] = None, correlation_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.correlation_id = correlation_id


class TransientPlatformError(PlatformError):
    """Infrastructure-class failure; the same call may succeed if retried."""

    transient = True


class PermanentPlatformError(PlatformError):
    """The platform rejected the request; retrying the same call cannot help."""


class PlatformAdapter:
    def __init__(
        self,
        base_url: str = "",
        token: str = "",
        request_timeout_seconds: Optional[float] = None,
        header_name: str = "X-Relay-Platform-Token",
        request_id_provider: Optional[Callable[[], str]] = None,
    ) -> None:
        self.base_url = base_url
        self.token = token
        self.request_timeout_seconds = request_timeout_seconds
        self.header_name = header_name.strip() if header_name else ""
        self.request_id_provider = request_id_provider
        self._logger = logging.getLogger("relay.platform")
        self._obs_logger = logging.getLogger("relay.obs")

    def apply_spec(self, spec: dict) -> str:
        service, environment = self._target_parts(spec)
        url = f"{self._workload_url(service, environment)}/rollouts"
        response, status_code, headers = self._request_json("POST", url, {"spec": spec}, operation="apply_spec")
        handle = self._extract_handle(response)
        if not handle:
            correlation_id = self._extract_correlation_id(response, headers)
            detail = f"Platform apply returned no rollout handle (HTTP {status_code})"
            if correlation_id:
                detail = f"{detail}; requestId={correlation_id}"
            raise PermanentPlatformError(detail, status_code=status_code, correlation_id=correlation_id)
        self._logger.info(
            "platform.apply service=%s environment=%s version=%s handle=%s",
            service,
            environment,
            spec.get("version"),
            handle,
        )
        return handle

    def query_health(self, handle: str) -> dict:
        url = f"{self._base()}/rollouts/{quote(handle, safe='')}/health"
        response, _, _ = self._request_json("GET", url, operation="query_health")
        raw_status = str(response.get("status") or response.get("state") or "").upper()
        return {
            "status": map_health_status(raw_status),
            "detail": _coerce_text(response.get("detail") or response.get("message")),
            "readyInstances": response.get("readyInstances"),
            "desiredInstances": response.get("desiredInstances"),
        }

    def capture_state(self, service: str, environment: str) -> dict:
        url = f"{self._workload_url(service, environment)}/state"
        response, _, _ = self._request_json("GET", url, operation="capture_state")
        if not isinstance(response, dict):
            raise PermanentPlatformError("Platform returned an invalid state document")
        return response

    def restore_state(self, service: str, environment: str, state: dict) -> None:
        url = f"{self._workload_url(service, environment)}/state"
        self._request_json("PUT", url, {"state": state}, operation="restore_state")
        self._logger.info("platform.restore service=%s environment=%s", service, environment)

    def _base(self) -> str:
        if not self.base_url:
            raise PermanentPlatformError("Platform base URL is required (set RELAY_PLATFORM_URL)")
        return self.base_url.rstrip("/")

    def _workload_url(self, service: str, environment: str) -> str:
        return f"{self._base()}/workloads/{quote(service, safe='')}/{quote(environment, safe='')}"

    @staticmethod
    def _target_parts(spec: dict) -> tuple:
        service = spec.get("service")
        environment = spec.get("environment")
        if not service or not environment:
            raise PermanentPlatformError("service and environment are required to apply a spec")
        return service, environment

    def _request_json(
        self,
        method: str,
        url: str,
        body: Optional[dict] = None,
        operation: str = "request",
    ) -> tuple:
        data = None
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.header_name and self.token:
            headers[self.header_name] = self.token
        request_id = self.request_id_provider() if self.request_id_provider else ""
        if request_id:
            headers["X-Request-Id"] = request_id
        if body is not None:
            data = json.dumps(body).encode("utf-8")
        request = Request(url, data=data, headers=headers, method=method)
        start = time.monotonic()
        self._log_platform_event("platform_call_started", request_id, operation, url)
        try:
            if self.request_timeout_seconds is None:
                response_ctx = urlopen(request)
            else:
                response_ctx = urlopen(request, timeout=self.request_timeout_seconds)
            with response_ctx as response:
                status_code = response.status
                response_headers = dict(response.headers.items())
                payload = response.read().decode("utf-8")
        except HTTPError as exc:
            latency_ms = (time.monotonic() - start) * 1000
            detail = exc.read().decode("utf-8") if exc.fp else ""
            response_headers = dict(exc.headers.items()) if exc.headers else {}
            correlation_id = self._extract_correlation_id({}, response_headers)
            snippet = self._safe_snippet(detail)
            message = f"Platform HTTP {exc.code}: {snippet}" if snippet else f"Platform HTTP {exc.code}"
            if correlation_id:
                message = f"{message}; requestId={correlation_id}"
            redacted_message = redact_text(message)
            self._log_platform_event(
                "platform_call_failed",
                request_id,
                operation,
                url,
                outcome="FAILED",
                duration_ms=round(latency_ms, 1),
                error=redacted_message,
                status_code=exc.code,
            )
            error_cls = TransientPlatformError if exc.code in TRANSIENT_STATUS_CODES else PermanentPlatformError
            raise error_cls(redacted_message, status_code=exc.code, correlation_id=correlation_id) from exc
        except (URLError, TimeoutError, ConnectionError) as exc:
            latency_ms = (time.monotonic() - start) * 1000
            reason = getattr(exc, "reason", exc)
            self._log_platform_event(
                "platform_call_failed",
                request_id,
                operation,
                url,
                outcome="FAILED",
                duration_ms=round(latency_ms, 1),
                error=redact_text(str(reason)),
            )
            raise TransientPlatformError(redact_text(f"Platform connection failed: {reason}")) from exc
        latency_ms = (time.monotonic() - start) * 1000
        self._log_platform_event(
            "platform_call_succeeded",
            request_id,
            operation,
            url,
            outcome="SUCCESS",
            duration_ms=round(latency_ms, 1),
            status_code=status_code,
        )
        if not payload:
            return {}, status_code, response_headers
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise PermanentPlatformError(
                f"Platform returned a non-JSON response for {operation}", status_code=status_code
            ) from exc
        if not isinstance(parsed, dict):
            return {"items": parsed}, status_code, response_headers
        return parsed, status_code, response_headers

    def _log_platform_event(
        self,
        event: str,
        request_id: str,
        operation: str,
        url: str,
        outcome: Optional[str] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        fields = {
            "event": event,
            "request_id": request_id or "",
            "operation": operation,
            "target": redact_url(url),
        }
        if outcome:
            fields["outcome"] = outcome
        if duration_ms is not None:
            fields["duration_ms"] = duration_ms
        if status_code is not None:
            fields["status_code"] = status_code
        if error:
            fields["error"] = redact_text(error)
        parts = [f"{key}={fields[key]}" for key in sorted(fields.keys())]
        self._obs_logger.info(" ".join(parts))

    @staticmethod
    def _safe_snippet(value: str, limit: int = 240) -> str:
        if not value:
            return ""
        text = value.replace("\n", " ").replace("\r", " ")
        if len(text) <= limit:
            return text
        return text[:limit].rstrip() + "..."

    @staticmethod
    def _extract_correlation_id(payload: dict, headers: dict) -> Optional[str]:
        for key in ["X-Request-Id", "X-Request-ID", "X-Platform-Request-Id"]:
            value = headers.get(key)
            if value:
                return str(value)
        for key in ["requestId", "correlationId"]:
            value = payload.get(key)
            if value:
                return str(value)
        return None

    @staticmethod
    def _extract_handle(response: dict) -> Optional[str]:
        if not isinstance(response, dict):
            return None
        for key in ["handle", "rolloutId", "id"]:
            value = response.get(key)
            if value:
                return str(value)
        ref = response.get("ref") or response.get("url")
        if isinstance(ref, str):
            parts = ref.strip("/").split("/")
            if parts and parts[-1]:
                return parts[-1]
        return None


def map_health_status(status: str) -> str:
    healthy = {"HEALTHY", "READY", "AVAILABLE", "PASSING"}
    unhealthy = {"UNHEALTHY", "FAILED", "DEGRADED", "CRASHLOOP", "CRASH_LOOP_BACK_OFF", "ERROR"}
    if status in healthy:
        return HEALTHY
    if status in unhealthy:
        return UNHEALTHY
    return PROGRESSING


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


_PATTERN_MAP = [
    {
        "pattern": "denied",
        "category": "APPROVAL",
        "summary": "Promotion was not approved.",
        "action": "Request a new promotion once the change is cleared.",
    },
    {
        "pattern": "approval",
        "category": "APPROVAL",
        "summary": "Promotion was not approved.",
        "action": "Request a new promotion once the change is cleared.",
    },
    {
        "pattern": "timed out",
        "category": "TIMEOUT",
        "summary": "Rollout did not become healthy in time.",
        "action": "Check the workload's readiness and retry the promotion.",
    },
    {
        "pattern": "timeout",
        "category": "TIMEOUT",
        "summary": "Rollout did not become healthy in time.",
        "action": "Check the workload's readiness and retry the promotion.",
    },
    {
        "pattern": "unhealthy",
        "category": "APP",
        "summary": "Rollout reported unhealthy instances.",
        "action": "Inspect the service logs for the new version before retrying.",
    },
    {
        "pattern": "render",
        "category": "CONFIG",
        "summary": "Deployment manifest could not be rendered.",
        "action": "Fix the service template or environment profile and retry.",
    },
    {
        "pattern": "snapshot",
        "category": "INFRASTRUCTURE",
        "summary": "Target state could not be captured before the change.",
        "action": "Retry later or contact the platform team.",
    },
    {
        "pattern": "connection",
        "category": "INFRASTRUCTURE",
        "summary": "Compute platform is unavailable.",
        "action": "Retry later or contact the platform team.",
    },
    {
        "pattern": "http 5",
        "category": "INFRASTRUCTURE",
        "summary": "Compute platform is unavailable.",
        "action": "Retry later or contact the platform team.",
    },
    {
        "pattern": "http 4",
        "category": "VALIDATION",
        "summary": "Compute platform rejected the deployment spec.",
        "action": "Verify the rendered spec for this environment and retry.",
    },
    {
        "pattern": "requested",
        "category": "ROLLBACK",
        "summary": "Rollback was requested by an operator.",
        "action": "No action needed.",
    },
]


def classify_failure(text: Optional[str], is_rollback: bool = False) -> dict:
    lowered = (text or "").lower()
    detail = redact_text(text) if text else None
    if is_rollback:
        return build_failure(
            "ROLLBACK",
            "Rollback could not be completed; manual intervention is required.",
            "Restore the target by hand, then record the outcome.",
            detail,
        )
    for entry in _PATTERN_MAP:
        if entry["pattern"] in lowered:
            return build_failure(entry["category"], entry["summary"], entry["action"], detail)
    return build_failure(
        "UNKNOWN",
        "Deployment failed for an unknown reason.",
        "Retry the promotion or contact the platform team.",
        detail,
    )


def normalize_failures(raw_failures: Optional[List[dict]]) -> List[dict]:
    if not raw_failures:
        return []
    normalized = []
    for failure in raw_failures:
        summary = failure.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            summary = "Deployment failed."
        action_hint = failure.get("actionHint")
        if not isinstance(action_hint, str) or not action_hint.strip():
            action_hint = "Retry the promotion or contact the platform team."
        normalized.append(
            {
                "category": str(failure.get("category") or "UNKNOWN").upper(),
                "summary": summary,
                "detail": failure.get("detail"),
                "actionHint": action_hint,
                "observedAt": failure.get("observedAt") or utc_now(),
            }
        )
    return normalized


def build_failure(category: str, summary: str, action_hint: str, detail: Optional[str]) -> dict:
    return {
        "category": category,
        "summary": summary,
        "detail": detail,
        "actionHint": action_hint,
        "observedAt": utc_now(),
    }


def _coerce_text(value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value)
        except (TypeError, ValueError):
            return None
    return str(value).strip() or None
