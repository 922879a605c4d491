from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(str, Enum):
    PLATFORM_ADMIN = "PLATFORM_ADMIN"
    RELEASE_MANAGER = "RELEASE_MANAGER"
    APPROVER = "APPROVER"
    OBSERVER = "OBSERVER"


class DeploymentState(str, Enum):
    PENDING = "PENDING"
    SNAPSHOTTING = "SNAPSHOTTING"
    RENDERING = "RENDERING"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    APPLYING = "APPLYING"
    HEALTH_CHECKING = "HEALTH_CHECKING"
    PROMOTING = "PROMOTING"
    SUCCEEDED = "SUCCEEDED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"


class ApprovalDecision(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    TIMED_OUT = "TIMED_OUT"


class HealthVerdict(str, Enum):
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    TIMED_OUT = "TIMED_OUT"
    CANCELED = "CANCELED"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class Artifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    service: str
    version: str
    digest: str
    createdAt: str
    artifactRef: Optional[str] = None


class Environment(BaseModel):
    name: str
    order: int = Field(..., ge=0)
    display_name: Optional[str] = None
    requires_approval: bool = False
    approval_timeout_seconds: Optional[float] = Field(None, gt=0)
    health_check_timeout_seconds: Optional[float] = Field(None, gt=0)
    is_enabled: bool = True
    config: Dict[str, Any] = {}


class ServiceEntry(BaseModel):
    service_name: str
    allowed_environments: Optional[List[str]] = None
    manifest: Dict[str, Any]


class RenderedSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    service: str
    environment: str
    version: str
    digest: str
    image: str = Field(..., min_length=1)
    replicas: int = Field(..., ge=1)
    env: Dict[str, str] = {}
    labels: Dict[str, str] = {}
    resources: Optional[Dict[str, str]] = None
    healthPath: Optional[str] = None

    @field_validator("env", "labels", mode="before")
    @classmethod
    def _stringify_scalars(cls, value):
        if not isinstance(value, dict):
            return value
        converted = {}
        for key, item in value.items():
            if isinstance(item, bool):
                converted[key] = "true" if item else "false"
            elif isinstance(item, (int, float)):
                converted[key] = str(item)
            else:
                converted[key] = item
        return converted


class PromotionIntent(BaseModel):
    service: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    environment: str = Field(..., min_length=1)
    changeSummary: Optional[str] = Field(None, max_length=240)


class RollbackIntent(BaseModel):
    reason: Optional[str] = Field(None, max_length=240)


class ApprovalIntent(BaseModel):
    comment: Optional[str] = Field(None, max_length=240)


class BuildRegistration(BaseModel):
    service: str
    version: str
    digest: str
    artifactRef: Optional[str] = None
    createdAt: Optional[str] = None


class NormalizedFailure(BaseModel):
    category: str
    summary: str
    detail: Optional[str] = None
    actionHint: Optional[str] = None
    observedAt: str


class DeploymentRecord(BaseModel):
    id: str
    service: str
    environment: str
    rank: int
    version: str
    artifact: Artifact
    state: DeploymentState
    changeSummary: Optional[str] = None
    createdAt: str
    updatedAt: str
    snapshotRef: Optional[str] = None
    applyHandle: Optional[str] = None
    renderedSpec: Optional[Dict[str, Any]] = None
    failureReason: Optional[str] = None
    rollbackRequested: bool = False
    rollbackRequestedBy: Optional[str] = None
    requestedBy: Optional[str] = None
    failures: List[NormalizedFailure] = []


class TransitionEvent(BaseModel):
    deploymentId: str
    fromState: Optional[DeploymentState] = None
    toState: DeploymentState
    timestamp: str
    metadata: Dict[str, Any] = {}


class ApprovalRequest(BaseModel):
    deploymentId: str
    requestedAt: str
    expiresAt: str
    decision: ApprovalDecision
    decidedBy: Optional[str] = None
    decidedAt: Optional[str] = None
    comment: Optional[str] = None


class Actor(BaseModel):
    actor_id: str
    role: Role
    email: Optional[str] = None


class ErrorResponse(BaseModel):
    code: str
    error_code: str
    failure_cause: str
    message: str
    request_id: str
