import re
from typing import Any, Dict, List

from pydantic import ValidationError

from models import Artifact, Environment, RenderedSpec
from policy import RenderValidationError


_REFERENCE = re.compile(r"\$\{([A-Za-z0-9_.-]+)\}")
_WHOLE_REFERENCE = re.compile(r"^\$\{([A-Za-z0-9_.-]+)\}$")


def build_context(artifact: Artifact, environment: Environment) -> Dict[str, Any]:
    context = dict(environment.config)
    context.update(
        {
            "service": artifact.service,
            "environment": environment.name,
            "artifact.service": artifact.service,
            "artifact.version": artifact.version,
            "artifact.digest": artifact.digest,
            "artifact.createdAt": artifact.createdAt,
            "artifact.ref": artifact.artifactRef or "",
        }
    )
    return context


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _substitute(value: Any, context: Dict[str, Any], path: str, errors: List[str]) -> Any:
    if isinstance(value, str):
        whole = _WHOLE_REFERENCE.match(value)
        if whole:
            key = whole.group(1)
            if key not in context:
                errors.append(f"{path}: undefined reference ${{{key}}}")
                return value
            return context[key]

        def replace(match):
            key = match.group(1)
            if key not in context:
                errors.append(f"{path}: undefined reference ${{{key}}}")
                return match.group(0)
            return _as_text(context[key])

        return _REFERENCE.sub(replace, value)
    if isinstance(value, dict):
        return {key: _substitute(item, context, f"{path}.{key}", errors) for key, item in value.items()}
    if isinstance(value, list):
        return [_substitute(item, context, f"{path}[{index}]", errors) for index, item in enumerate(value)]
    return value


def render(artifact: Artifact, environment: Environment, template: Dict[str, Any]) -> RenderedSpec:
    """Resolve a service manifest template into a typed spec for one environment."""
    if not isinstance(template, dict):
        raise RenderValidationError("Manifest template must be an object")
    errors: List[str] = []
    resolved = _substitute(template, build_context(artifact, environment), "manifest", errors)
    if errors:
        raise RenderValidationError("Manifest references undefined keys", errors)
    resolved.update(
        {
            "service": artifact.service,
            "environment": environment.name,
            "version": artifact.version,
            "digest": artifact.digest,
        }
    )
    try:
        return RenderedSpec.model_validate(resolved)
    except ValidationError as exc:
        details = [
            f"{'.'.join(str(part) for part in error['loc']) or 'manifest'}: {error['msg']}" for error in exc.errors()
        ]
        raise RenderValidationError("Rendered spec is invalid", details) from exc
