import os
from typing import Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError


class Settings:
    def __init__(self) -> None:
        self.ssm_prefix = os.getenv("RELAY_SSM_PREFIX", "")
        self.mutations_disabled = self._as_bool(
            self._get("mutations_disabled", "RELAY_MUTATIONS_DISABLED", "0", str)
        )
        self.db_path = os.getenv("RELAY_DB_PATH", "./data/relay.db")
        self.environment_registry_path = os.getenv("RELAY_ENVIRONMENT_REGISTRY_PATH", "./data/environments.json")
        self.service_registry_path = os.getenv("RELAY_SERVICE_REGISTRY_PATH", "./data/services.json")

        self.artifact_source = self._get("artifact_source", "RELAY_ARTIFACT_SOURCE", "registry", str).strip().lower()
        self.artifact_bucket = self._get("artifact_bucket", "RELAY_ARTIFACT_BUCKET", "", str)

        self.platform_base_url = self._get("platform/url", "RELAY_PLATFORM_URL", "", str)
        self.platform_token = self._resolve_secret(self._get("platform/token", "RELAY_PLATFORM_TOKEN", "", str))
        self.platform_timeout_seconds = self._get(
            "platform/timeout_seconds", "RELAY_PLATFORM_TIMEOUT_SECONDS", 30.0, float
        )

        self.apply_max_attempts = self._get("apply_max_attempts", "RELAY_APPLY_MAX_ATTEMPTS", 3, int)
        self.apply_backoff_seconds = self._get("apply_backoff_seconds", "RELAY_APPLY_BACKOFF_SECONDS", 2.0, float)
        self.health_poll_interval_seconds = self._get(
            "health/poll_interval_seconds", "RELAY_HEALTH_POLL_INTERVAL_SECONDS", 5.0, float
        )
        self.health_dwell_seconds = self._get("health/dwell_seconds", "RELAY_HEALTH_DWELL_SECONDS", 30.0, float)
        self.default_health_timeout_seconds = self._get(
            "health/timeout_seconds", "RELAY_HEALTH_TIMEOUT_SECONDS", 600.0, float
        )
        self.default_approval_timeout_seconds = self._get(
            "approval/timeout_seconds", "RELAY_APPROVAL_TIMEOUT_SECONDS", 24 * 60 * 60.0, float
        )
        self.snapshot_retention = self._get("snapshot_retention", "RELAY_SNAPSHOT_RETENTION", 5, int)

        self.notification_webhook_url = self._resolve_secret(
            self._get("notify/webhook_url", "RELAY_NOTIFY_WEBHOOK_URL", "", str)
        )
        self.notification_timeout_seconds = self._get(
            "notify/timeout_seconds", "RELAY_NOTIFY_TIMEOUT_SECONDS", 5.0, float
        )

        self.oidc_issuer = self._get("oidc/issuer", "RELAY_OIDC_ISSUER", "", str)
        self.oidc_audience = self._get("oidc/audience", "RELAY_OIDC_AUDIENCE", "", str)
        self.oidc_jwks_url = self._get("oidc/jwks_url", "RELAY_OIDC_JWKS_URL", "", str)
        self.oidc_roles_claim = self._get(
            "oidc/roles_claim",
            "RELAY_OIDC_ROLES_CLAIM",
            "https://relay.example/claims/roles",
            str,
        )
        cors = os.getenv("RELAY_CORS_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
        self.cors_origins = [o.strip() for o in cors.split(",") if o.strip()]

    def _as_bool(self, value: object) -> bool:
        text = str(value or "").strip().lower()
        return text in {"1", "true", "yes", "on"}

    def _get(self, ssm_key: str, env_key: str, default, parser: Callable) -> Optional[object]:
        if env_key in os.environ:
            try:
                return parser(os.environ[env_key])
            except ValueError:
                return default
        if self.ssm_prefix:
            value = self._read_ssm(f"{self.ssm_prefix}/{ssm_key}")
            if value is not None:
                try:
                    return parser(value)
                except ValueError:
                    return default
        return default

    def _read_ssm(self, name: str) -> Optional[str]:
        try:
            client = boto3.client("ssm")
            response = client.get_parameter(Name=name, WithDecryption=True)
            return response.get("Parameter", {}).get("Value")
        except (BotoCoreError, ClientError):
            return None

    def _resolve_secret(self, value: Optional[str]) -> Optional[str]:
        if not isinstance(value, str):
            return value
        if not value.startswith("arn:aws:secretsmanager:"):
            return value
        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=value)
            return response.get("SecretString", value)
        except (BotoCoreError, ClientError):
            return value


SETTINGS = Settings()
