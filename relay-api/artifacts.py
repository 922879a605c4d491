import base64
import binascii
import logging
from datetime import timezone
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from artifact_ref import s3_artifact_ref, split_s3_artifact_ref
from config import Settings
from models import Artifact
from observability import log_event
from policy import NotFoundError, PolicyError


class ArtifactSource:
    def resolve(self, service: str, version: str) -> Artifact:
        raise NotImplementedError


class RegistryArtifactSource(ArtifactSource):
    """Artifacts registered through POST /v1/builds."""

    def __init__(self, storage) -> None:
        self.storage = storage

    def resolve(self, service: str, version: str) -> Artifact:
        build = self.storage.find_latest_build(service, version)
        if not build:
            raise NotFoundError(f"Artifact {service}@{version} is not registered", code="ARTIFACT_NOT_FOUND")
        return Artifact(
            service=build["service"],
            version=build["version"],
            digest=build["digest"],
            createdAt=build["createdAt"],
            artifactRef=build.get("artifactRef"),
        )


class S3ArtifactSource(ArtifactSource):
    def __init__(self, bucket: str, client=None) -> None:
        if not bucket:
            raise RuntimeError("Artifact bucket is not configured")
        self.bucket = bucket
        self._client = client or boto3.client("s3")

    def resolve(self, service: str, version: str) -> Artifact:
        ref = s3_artifact_ref(self.bucket, service, version)
        bucket, key = split_s3_artifact_ref(ref)
        try:
            head = self._client.head_object(Bucket=bucket, Key=key, ChecksumMode="ENABLED")
        except ClientError as exc:
            error_code = str(exc.response.get("Error", {}).get("Code", ""))
            if error_code in {"404", "NoSuchKey", "NotFound"}:
                raise NotFoundError(f"Artifact {service}@{version} not found", code="ARTIFACT_NOT_FOUND") from exc
            log_event("artifact_head_failed", level=logging.WARNING, bucket=bucket, key=key, error=error_code)
            raise PolicyError(503, "ARTIFACT_SOURCE_UNAVAILABLE", "Artifact source is unavailable") from exc
        except BotoCoreError as exc:
            log_event("artifact_head_failed", level=logging.WARNING, bucket=bucket, key=key, error=str(exc))
            raise PolicyError(503, "ARTIFACT_SOURCE_UNAVAILABLE", "Artifact source is unavailable") from exc
        created_at = head.get("LastModified")
        if created_at is not None:
            created_at = created_at.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        log_event("artifact_resolved", service=service, version=version, artifact_ref=ref)
        return Artifact(
            service=service,
            version=version,
            digest=_digest_from_head(head),
            createdAt=created_at or "",
            artifactRef=ref,
        )


def _digest_from_head(head: dict) -> str:
    checksum = head.get("ChecksumSHA256")
    if checksum:
        try:
            return "sha256:" + base64.b64decode(checksum, validate=True).hex()
        except binascii.Error:
            log_event("artifact_checksum_invalid", level=logging.WARNING, checksum=checksum)
    etag = str(head.get("ETag") or "").strip('"')
    return f"etag:{etag}"


def build_artifact_source(settings: Settings, storage, client: Optional[object] = None) -> ArtifactSource:
    if settings.artifact_source == "s3":
        return S3ArtifactSource(settings.artifact_bucket, client=client)
    return RegistryArtifactSource(storage)
