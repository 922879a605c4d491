import re
from typing import Optional

from config import Settings
from models import Environment, ServiceEntry


VERSION_PATTERN = re.compile(r"^v?[0-9]+\.[0-9]+\.[0-9]+(-[A-Za-z0-9.-]+)?$")
DIGEST_PATTERN = re.compile(r"^sha256:[A-Fa-f0-9]{64}$")


class PolicyError(Exception):
    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ValidationFailedError(PolicyError):
    def __init__(self, message: str, code: str = "INVALID_REQUEST") -> None:
        super().__init__(400, code, message)


class NotFoundError(PolicyError):
    def __init__(self, message: str, code: str = "NOT_FOUND") -> None:
        super().__init__(404, code, message)


class ConflictError(PolicyError):
    def __init__(self, message: str, code: str = "CONFLICT") -> None:
        super().__init__(409, code, message)


class InvalidStateError(PolicyError):
    def __init__(self, message: str, code: str = "INVALID_STATE") -> None:
        super().__init__(409, code, message)


class PromotionOrderError(PolicyError):
    def __init__(self, message: str, code: str = "PROMOTION_ORDER_VIOLATION") -> None:
        super().__init__(400, code, message)


class RenderValidationError(PolicyError):
    def __init__(self, message: str, errors: Optional[list] = None) -> None:
        super().__init__(400, "RENDER_INVALID", message)
        self.errors = errors or []


class SnapshotError(PolicyError):
    def __init__(self, message: str) -> None:
        super().__init__(503, "SNAPSHOT_FAILED", message)


class ApprovalDeniedError(PolicyError):
    def __init__(self, message: str, code: str = "APPROVAL_DENIED") -> None:
        super().__init__(409, code, message)


class ApprovalTimeoutError(ApprovalDeniedError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="APPROVAL_TIMED_OUT")


class RollbackFailedError(PolicyError):
    def __init__(self, message: str) -> None:
        super().__init__(409, "ROLLBACK_FAILED", message)


class MutationsDisabledError(PolicyError):
    def __init__(self) -> None:
        super().__init__(503, "MUTATIONS_DISABLED", "Mutating operations are disabled")


class Guardrails:
    def __init__(self, storage, settings: Settings) -> None:
        self.storage = storage
        self.settings = settings

    def require_mutations_enabled(self) -> None:
        if self.settings.mutations_disabled:
            raise MutationsDisabledError()

    def validate_version(self, version: str) -> None:
        if not isinstance(version, str) or not VERSION_PATTERN.match(version):
            raise ValidationFailedError("Version format is invalid", code="INVALID_VERSION")

    def validate_digest(self, digest: str) -> None:
        if not isinstance(digest, str) or not DIGEST_PATTERN.match(digest):
            raise ValidationFailedError("Artifact digest must be sha256:<64 hex>", code="INVALID_ARTIFACT")

    def validate_service(self, service: str) -> ServiceEntry:
        entry = self.storage.get_service(service)
        if not entry:
            raise NotFoundError(f"Service {service} is not registered", code="SERVICE_NOT_FOUND")
        return entry

    def validate_environment(self, name: str, service_entry: ServiceEntry) -> Environment:
        environment = self.storage.get_environment(name)
        if not environment:
            raise NotFoundError(f"Environment {name} is not configured", code="ENVIRONMENT_NOT_FOUND")
        if not environment.is_enabled:
            raise PolicyError(403, "ENVIRONMENT_DISABLED", f"Environment {name} is disabled")
        allowed = service_entry.allowed_environments
        if allowed is not None and name not in allowed:
            raise PolicyError(
                403,
                "ENVIRONMENT_NOT_ALLOWED",
                f"Environment {name} is not allowed for service {service_entry.service_name}",
            )
        return environment

    def previous_environment(self, environment: Environment) -> Optional[Environment]:
        chain = [item for item in self.storage.list_environments() if item.is_enabled]
        previous = None
        for item in chain:
            if item.order >= environment.order:
                break
            previous = item
        return previous

    def enforce_promotion_order(self, service: str, version: str, environment: Environment) -> None:
        live = self.storage.find_live_deployment(service, environment.name)
        if live and live.get("version") == version:
            raise PromotionOrderError(
                f"Version {version} is already live in {environment.name}",
                code="ARTIFACT_ALREADY_LIVE",
            )
        previous = self.previous_environment(environment)
        if previous is None:
            return
        latest = self.storage.find_latest_deployment_for_version(service, previous.name, version)
        if not latest or latest.get("state") != "SUCCEEDED":
            raise PromotionOrderError(
                f"Version {version} must succeed in {previous.name} before promotion to {environment.name}",
                code="PROMOTION_PATH_NOT_ALLOWED",
            )
