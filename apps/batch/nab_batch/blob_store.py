from __future__ import annotations

import logging
from typing import Any, Iterator
from urllib.parse import urlparse

from minio import Minio
from minio.error import S3Error

from nab_batch.config import PipelineSettings

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchObject", "NoSuchBucket", "NotFound", "ResourceNotFound"})
_BUCKET_OWNED_CODES = frozenset({"BucketAlreadyOwnedByYou", "BucketAlreadyExists"})
_STREAM_CHUNK_BYTES = 256 * 1024


def minio_client(settings: PipelineSettings) -> Minio:
    settings.require("storage")
    parsed = urlparse(settings.s3_endpoint or "")
    host = parsed.netloc or parsed.path
    secure = parsed.scheme != "http"
    return Minio(
        host,
        access_key=settings.s3_access_key,
        secret_key=settings.s3_secret_key,
        secure=secure,
        region=settings.s3_region,
    )


def object_uri(scheme: str, bucket: str, name: str) -> str:
    return f"{scheme}://{bucket}/{name.lstrip('/')}"


def parse_object_uri(uri: str) -> tuple[str, str]:
    """Split `gs://bucket/path/to/object` into (bucket, object name)."""
    parsed = urlparse(uri)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"not an object URI: {uri!r}")
    return parsed.netloc, parsed.path.lstrip("/")


def ensure_bucket(client: Minio, bucket: str, *, region: str | None = None) -> bool:
    """Create the bucket if it does not exist yet. Returns True when it was created."""
    if client.bucket_exists(bucket):
        return False
    try:
        if region:
            client.make_bucket(bucket, location=region)
        else:
            client.make_bucket(bucket)
    except S3Error as exc:
        # Another run created it between the existence check and the create call.
        if exc.code in _BUCKET_OWNED_CODES:
            return False
        raise
    logger.info("Created bucket %s", bucket)
    return True


def stat_object_or_none(client: Minio, bucket: str, name: str) -> Any | None:
    try:
        return client.stat_object(bucket, name)
    except S3Error as exc:
        if exc.code in _NOT_FOUND_CODES:
            return None
        raise


def user_metadata_value(stat: Any, key: str) -> str | None:
    """Read a user metadata entry from a stat result, whatever the header casing."""
    metadata = getattr(stat, "metadata", None) or {}
    wanted = {key.lower(), f"x-amz-meta-{key}".lower()}
    for name, value in metadata.items():
        if str(name).lower() in wanted:
            if isinstance(value, (list, tuple)):
                return str(value[0]) if value else None
            return str(value)
    return None


def list_object_names(client: Minio, bucket: str, prefix: str, *, suffix: str | None = None) -> list[str]:
    names: list[str] = []
    for obj in client.list_objects(bucket, prefix=prefix, recursive=True):
        if getattr(obj, "is_dir", False):
            continue
        name = obj.object_name
        if suffix and not name.endswith(suffix):
            continue
        names.append(name)
    return sorted(names)


def iter_object_lines(client: Minio, bucket: str, name: str) -> Iterator[str]:
    """Stream an object as decoded text lines without loading it into memory."""
    resp = client.get_object(bucket, name)
    try:
        buffer = b""
        for chunk in resp.stream(_STREAM_CHUNK_BYTES):
            buffer += chunk
            *lines, buffer = buffer.split(b"\n")
            for raw in lines:
                yield raw.decode("utf-8", errors="replace").rstrip("\r")
        if buffer:
            yield buffer.decode("utf-8", errors="replace").rstrip("\r")
    finally:
        resp.close()
        resp.release_conn()
