import re
from dataclasses import dataclass
from typing import Iterable, Tuple


DEFAULT_ARTIFACT_SCHEMES = ("s3", "oci", "https")

_URI_PATTERN = re.compile(r"^(?P<scheme>[a-z][a-z0-9+.-]*):\/\/(?P<opaque>.+)$", re.IGNORECASE)


@dataclass(frozen=True)
class ArtifactRef:
    scheme: str
    opaque: str

    def __str__(self) -> str:
        return f"{self.scheme}://{self.opaque}"


def parse_artifact_ref(value: str) -> ArtifactRef:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("artifactRef must be a non-empty string")
    match = _URI_PATTERN.match(value.strip())
    if not match:
        raise ValueError("artifactRef must be a URI with scheme")
    return ArtifactRef(scheme=match.group("scheme").lower(), opaque=match.group("opaque"))


def validate_artifact_ref(value: str, allowed_schemes: Iterable[str] = DEFAULT_ARTIFACT_SCHEMES) -> ArtifactRef:
    parsed = parse_artifact_ref(value)
    allowed = {scheme.strip().lower() for scheme in allowed_schemes if isinstance(scheme, str) and scheme.strip()}
    if parsed.scheme not in allowed:
        raise ValueError(f"artifactRef scheme must be one of: {', '.join(sorted(allowed)) or 'none'}")
    return parsed


def s3_artifact_ref(bucket: str, service: str, version: str) -> str:
    return f"s3://{bucket}/{service}/{service}-{version}.zip"


def split_s3_artifact_ref(value: str) -> Tuple[str, str]:
    parsed = validate_artifact_ref(value, ("s3",))
    bucket, _, key = parsed.opaque.partition("/")
    if not bucket or not key:
        raise ValueError("artifactRef must include bucket and key")
    return bucket, key
