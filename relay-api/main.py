import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import HTTPException as FastAPIHTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from platform_adapter.adapter import PlatformAdapter, normalize_failures

from artifact_ref import validate_artifact_ref
from auth import get_actor
from config import SETTINGS
from models import (
    Actor,
    ApprovalIntent,
    ApprovalRequest,
    BuildRegistration,
    DeploymentRecord,
    DeploymentState,
    ErrorResponse,
    PromotionIntent,
    Role,
    RollbackIntent,
    TransitionEvent,
)
from observability import get_request_id, log_event, request_id_ctx
from orchestrator import Orchestrator
from policy import PolicyError
from storage import build_storage, utc_now


logger = logging.getLogger("relay.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    resumed = await orchestrator.recover()
    logger.info("relay.recover resumed=%s", len(resumed))
    yield
    await orchestrator.shutdown()


app = FastAPI(title="Relay API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
storage = build_storage(SETTINGS)
platform = PlatformAdapter(
    SETTINGS.platform_base_url,
    SETTINGS.platform_token,
    request_timeout_seconds=SETTINGS.platform_timeout_seconds,
    request_id_provider=get_request_id,
)
orchestrator = Orchestrator(storage, platform, SETTINGS)

logger.info(
    "config.loaded environments=%s services=%s platform_url=%s",
    len(storage.list_environments()),
    len(storage.list_services()),
    "set" if SETTINGS.platform_base_url else "missing",
)

if os.getenv("RELAY_LAMBDA", "") == "1":
    from mangum import Mangum

    handler = Mangum(app, lifespan="off")


USER_ERROR_CODES = {
    "INVALID_REQUEST",
    "INVALID_VERSION",
    "INVALID_ARTIFACT",
    "NOT_FOUND",
    "SERVICE_NOT_FOUND",
    "ENVIRONMENT_NOT_FOUND",
    "ARTIFACT_NOT_FOUND",
    "PROMOTION_ORDER_VIOLATION",
    "PROMOTION_PATH_NOT_ALLOWED",
    "ARTIFACT_ALREADY_LIVE",
    "INVALID_STATE",
    "CONFLICT",
    "RENDER_INVALID",
}
POLICY_CHANGE_CODES = {
    "ENVIRONMENT_NOT_ALLOWED",
    "ENVIRONMENT_DISABLED",
    "MUTATIONS_DISABLED",
    "ROLE_FORBIDDEN",
    "AUTHZ_ROLE_REQUIRED",
    "UNAUTHORIZED",
}
PLATFORM_CODES = {
    "SNAPSHOT_FAILED",
    "ROLLBACK_FAILED",
    "ARTIFACT_SOURCE_UNAVAILABLE",
    "OIDC_UNAVAILABLE",
}


def classify_failure_cause(error_code: Optional[str]) -> str:
    if error_code in USER_ERROR_CODES:
        return "USER_ERROR"
    if error_code in POLICY_CHANGE_CODES:
        return "POLICY_CHANGE"
    if error_code in PLATFORM_CODES:
        return "PLATFORM"
    return "UNKNOWN"


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    payload = ErrorResponse(
        code=code,
        error_code=code,
        failure_cause=classify_failure_cause(code),
        message=message,
        request_id=request_id_ctx.get() or str(uuid.uuid4()),
    )
    return JSONResponse(status_code=status_code, content=payload.model_dump())


@app.exception_handler(PolicyError)
async def policy_error_handler(request: Request, exc: PolicyError):
    return error_response(exc.status_code, exc.code, exc.message)


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        return error_response(exc.status_code, exc.detail["code"], exc.detail.get("message", ""))
    return error_response(exc.status_code, "HTTP_ERROR", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in error.get("loc", ()) if part != "body") for error in exc.errors()]
    message = f"Invalid request: {', '.join(field for field in fields if field)}" if any(fields) else "Invalid request"
    return error_response(400, "INVALID_REQUEST", message)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-Id"] = request_id
    return response


def require_role(actor: Actor, allowed: set, action: str):
    if actor.role in allowed:
        return None
    return error_response(403, "ROLE_FORBIDDEN", f"Role {actor.role.value} cannot {action}")


RELEASE_ROLES = {Role.RELEASE_MANAGER, Role.PLATFORM_ADMIN}
APPROVAL_ROLES = {Role.APPROVER, Role.PLATFORM_ADMIN}


def _deployment_view(deployment: dict) -> dict:
    view = dict(deployment)
    view["failures"] = normalize_failures(deployment.get("failures"))
    return DeploymentRecord.model_validate(view).model_dump(mode="json")


@app.get("/v1/health")
def health():
    return {"status": "ok"}


@app.post("/v1/promotions", status_code=202)
async def create_promotion(intent: PromotionIntent, authorization: Optional[str] = Header(None)):
    actor = get_actor(authorization)
    role_error = require_role(actor, RELEASE_ROLES, "promote")
    if role_error:
        return role_error
    deployment_id = await orchestrator.request_promotion(
        intent.service,
        intent.version,
        intent.environment,
        change_summary=intent.changeSummary,
        actor=actor,
    )
    return _deployment_view(orchestrator.get_status(deployment_id))


@app.post("/v1/deployments/{deployment_id}/rollback")
async def rollback_deployment(
    deployment_id: str,
    intent: Optional[RollbackIntent] = None,
    authorization: Optional[str] = Header(None),
):
    actor = get_actor(authorization)
    role_error = require_role(actor, RELEASE_ROLES, "rollback")
    if role_error:
        return role_error
    if intent and intent.reason:
        log_event("rollback_reason", deployment_id=deployment_id, actor_id=actor.actor_id, reason=intent.reason)
    deployment = await orchestrator.request_rollback(deployment_id, actor=actor)
    return _deployment_view(deployment)


@app.post("/v1/deployments/{deployment_id}/approve")
async def approve_deployment(
    deployment_id: str,
    intent: Optional[ApprovalIntent] = None,
    authorization: Optional[str] = Header(None),
):
    actor = get_actor(authorization)
    role_error = require_role(actor, APPROVAL_ROLES, "approve")
    if role_error:
        return role_error
    approval = orchestrator.approve(deployment_id, actor, comment=intent.comment if intent else None)
    return ApprovalRequest.model_validate(approval).model_dump(mode="json")


@app.post("/v1/deployments/{deployment_id}/deny")
async def deny_deployment(
    deployment_id: str,
    intent: Optional[ApprovalIntent] = None,
    authorization: Optional[str] = Header(None),
):
    actor = get_actor(authorization)
    role_error = require_role(actor, APPROVAL_ROLES, "deny")
    if role_error:
        return role_error
    approval = orchestrator.deny(deployment_id, actor, comment=intent.comment if intent else None)
    return ApprovalRequest.model_validate(approval).model_dump(mode="json")


@app.get("/v1/deployments")
def list_deployments(
    service: Optional[str] = Query(None),
    environment: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    authorization: Optional[str] = Header(None),
):
    get_actor(authorization)
    if state and state not in DeploymentState.__members__:
        return error_response(400, "INVALID_REQUEST", f"Unknown deployment state {state}")
    return [_deployment_view(item) for item in storage.list_deployments(service, environment, state)]


@app.get("/v1/deployments/{deployment_id}")
def get_deployment(deployment_id: str, authorization: Optional[str] = Header(None)):
    get_actor(authorization)
    return _deployment_view(orchestrator.get_status(deployment_id))


@app.get("/v1/deployments/{deployment_id}/transitions")
def get_transitions(deployment_id: str, authorization: Optional[str] = Header(None)):
    get_actor(authorization)
    return [
        TransitionEvent.model_validate(item).model_dump(mode="json")
        for item in orchestrator.list_transitions(deployment_id)
    ]


@app.get("/v1/deployments/{deployment_id}/approval")
def get_approval(deployment_id: str, authorization: Optional[str] = Header(None)):
    get_actor(authorization)
    return ApprovalRequest.model_validate(orchestrator.get_approval(deployment_id)).model_dump(mode="json")


@app.get("/v1/services/{service}/environments/{environment}/status")
def get_target_status(service: str, environment: str, authorization: Optional[str] = Header(None)):
    get_actor(authorization)
    return _deployment_view(orchestrator.get_target_status(service, environment))


@app.get("/v1/environments")
def list_environments(authorization: Optional[str] = Header(None)):
    get_actor(authorization)
    return [environment.model_dump() for environment in storage.list_environments()]


@app.post("/v1/builds", status_code=201)
def register_build(reg: BuildRegistration, authorization: Optional[str] = Header(None)):
    actor = get_actor(authorization)
    role_error = require_role(actor, RELEASE_ROLES, "register builds")
    if role_error:
        return role_error
    guardrails = orchestrator.guardrails
    guardrails.require_mutations_enabled()
    guardrails.validate_service(reg.service)
    guardrails.validate_version(reg.version)
    guardrails.validate_digest(reg.digest)
    if reg.artifactRef:
        try:
            validate_artifact_ref(reg.artifactRef)
        except ValueError as exc:
            return error_response(400, "INVALID_ARTIFACT", str(exc))

    existing = storage.find_latest_build(reg.service, reg.version)
    if existing:
        if existing["digest"] != reg.digest:
            return error_response(
                409,
                "CONFLICT",
                f"Version {reg.version} of {reg.service} is already registered with a different digest",
            )
        return JSONResponse(status_code=200, content=existing)

    now = utc_now()
    record = storage.insert_build(
        {
            "service": reg.service,
            "version": reg.version,
            "digest": reg.digest,
            "artifactRef": reg.artifactRef,
            "createdAt": reg.createdAt or now,
            "registeredAt": now,
        }
    )
    log_event(
        "build_registered",
        service=reg.service,
        version=reg.version,
        digest=reg.digest,
        actor_id=actor.actor_id,
    )
    return record
