import json
import time
from typing import Any, Dict, Optional

import jwt
import requests
from fastapi import HTTPException
from jwt.algorithms import RSAAlgorithm

from config import SETTINGS
from models import Actor, Role

_JWKS_CACHE: Dict[str, Any] = {"url": None, "fetched_at": 0.0, "keys": {}}
_JWKS_TTL_SECONDS = 300

# Highest privilege first; the first group present in the token wins.
ROLE_GROUPS = [
    ("relay-platform-admins", Role.PLATFORM_ADMIN),
    ("relay-release-managers", Role.RELEASE_MANAGER),
    ("relay-approvers", Role.APPROVER),
    ("relay-observers", Role.OBSERVER),
]


def _auth_error(status_code: int, code: str, message: str) -> None:
    raise HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _jwks_url() -> str:
    if SETTINGS.oidc_jwks_url:
        return SETTINGS.oidc_jwks_url
    if not SETTINGS.oidc_issuer:
        return ""
    return f"{SETTINGS.oidc_issuer.rstrip('/')}/.well-known/jwks.json"


def _fetch_jwks(jwks_url: str) -> Dict[str, dict]:
    now = time.time()
    if _JWKS_CACHE["url"] == jwks_url and (now - _JWKS_CACHE["fetched_at"]) < _JWKS_TTL_SECONDS:
        return _JWKS_CACHE["keys"]
    response = requests.get(jwks_url, timeout=5)
    response.raise_for_status()
    keys = {key["kid"]: key for key in response.json().get("keys", []) if key.get("kid")}
    _JWKS_CACHE.update({"url": jwks_url, "fetched_at": now, "keys": keys})
    return keys


def _decode_jwt(token: str) -> dict:
    if not SETTINGS.oidc_issuer:
        _auth_error(500, "OIDC_CONFIG_MISSING", "RELAY_OIDC_ISSUER is required")
    if not SETTINGS.oidc_audience:
        _auth_error(500, "OIDC_CONFIG_MISSING", "RELAY_OIDC_AUDIENCE is required")
    jwks_url = _jwks_url()
    if not jwks_url:
        _auth_error(500, "OIDC_CONFIG_MISSING", "RELAY_OIDC_JWKS_URL is required")
    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError:
        _auth_error(401, "UNAUTHORIZED", "Invalid token header")
    kid = header.get("kid")
    if not kid:
        _auth_error(401, "UNAUTHORIZED", "Token is missing kid")
    try:
        keys = _fetch_jwks(jwks_url)
    except requests.RequestException:
        _auth_error(503, "OIDC_UNAVAILABLE", "Signing keys could not be fetched")
    jwk = keys.get(kid)
    if not jwk:
        _auth_error(401, "UNAUTHORIZED", "Unknown signing key")
    try:
        return jwt.decode(
            token,
            key=RSAAlgorithm.from_jwk(json.dumps(jwk)),
            algorithms=["RS256"],
            audience=SETTINGS.oidc_audience,
            issuer=SETTINGS.oidc_issuer,
        )
    except jwt.ExpiredSignatureError:
        _auth_error(401, "UNAUTHORIZED", "Token expired")
    except jwt.InvalidTokenError:
        _auth_error(401, "UNAUTHORIZED", "Invalid token")
    return {}


def map_role(groups: list) -> Role:
    for group, role in ROLE_GROUPS:
        if group in groups:
            return role
    _auth_error(403, "AUTHZ_ROLE_REQUIRED", "No recognized Relay role in token")
    return Role.OBSERVER


def _extract_actor_id(claims: dict) -> str:
    return claims.get("sub") or claims.get("email") or "unknown"


def get_actor(authorization: Optional[str]) -> Actor:
    if not authorization:
        _auth_error(401, "UNAUTHORIZED", "Authorization header required")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        _auth_error(401, "UNAUTHORIZED", "Authorization must be Bearer token")
    token = parts[1].strip()
    if not token:
        _auth_error(401, "UNAUTHORIZED", "Authorization token missing")
    claims = _decode_jwt(token)
    groups = claims.get(SETTINGS.oidc_roles_claim, [])
    if not isinstance(groups, list):
        _auth_error(403, "AUTHZ_ROLE_REQUIRED", "Roles claim missing or invalid")
    return Actor(actor_id=_extract_actor_id(claims), role=map_role(groups), email=claims.get("email"))
