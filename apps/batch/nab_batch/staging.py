from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable

from nab_batch.blob_store import ensure_bucket, object_uri, stat_object_or_none, user_metadata_value
from nab_batch.config import PipelineSettings
from nab_batch.errors import ConfigurationError, StagingIntegrityError
from nab_batch.hash_utils import file_sha256
from nab_batch.models import StagingObject
from nab_batch.observability.tracing import annotate, phase_span
from nab_batch.retry_utils import call_with_retries
from nab_batch.time_utils import _utc_now_iso

logger = logging.getLogger(__name__)

FINGERPRINT_KEY = "sha256"
_PART_SIZE = 64 * 1024 * 1024
_CONTENT_TYPE = "application/jsonl"
_NAME_HASH_CHARS = 16


def staging_object_name(base: str, fingerprint: str) -> str:
    """`staging/batch_input.jsonl` -> `staging/batch_input-<sha256[:16]>.jsonl`."""
    base = base.lstrip("/")
    stem, dot, suffix = base.rpartition(".")
    if not dot or not stem or "/" in suffix:
        return f"{base}-{fingerprint[:_NAME_HASH_CHARS]}"
    return f"{stem}-{fingerprint[:_NAME_HASH_CHARS]}.{suffix}"


def manifest_staging_uri(settings: PipelineSettings, manifest_path: str | Path) -> str | None:
    """
    URI the local manifest is (or will be) staged under, or None for an empty manifest.

    Derived from the manifest content alone, so submit, import and status find the job for
    exactly this generation without any local bookkeeping.
    """
    path = Path(manifest_path)
    if not path.is_file():
        raise ConfigurationError(f"Manifest not found: {path} (run `nab-batch export` first)")
    if path.stat().st_size == 0:
        return None
    name = staging_object_name(settings.staging_object, file_sha256(path))
    return object_uri(settings.object_uri_scheme, str(settings.s3_bucket), name)


class StagingUploader:
    """
    Copies a local manifest to object storage once per distinct content.

    The object name carries a prefix of the manifest's SHA-256, so every generation gets its own
    object and a staged manifest is never overwritten by a later one.

    A remote object is reused when its size matches and, if it carries a SHA-256 fingerprint,
    the fingerprint matches too. Objects uploaded without a fingerprint fall back to the
    size-only comparison.
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        *,
        uri_scheme: str = "gs",
        region: str | None = None,
        retries: int = 3,
        retry_base_seconds: float = 2.0,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._scheme = uri_scheme
        self._region = region
        self._retries = retries
        self._retry_base = retry_base_seconds
        self._sleep = sleep

    def _retry(self, fn: Callable[[], Any], label: str) -> Any:
        kwargs: dict[str, Any] = {"attempts": self._retries, "base_delay_seconds": self._retry_base}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return call_with_retries(fn, label=label, **kwargs)

    def _staging_object(self, remote_path: str, size: int, local_hash: str, remote_hash: str | None, skipped: bool) -> StagingObject:
        return StagingObject(
            remote_path=remote_path,
            size_bytes=size,
            local_fingerprint=local_hash,
            uri=object_uri(self._scheme, self._bucket, remote_path),
            remote_fingerprint=remote_hash,
            skipped=skipped,
        )

    def upload(self, local_path: str | Path, base_remote_path: str, *, dry_run: bool = False) -> StagingObject:
        path = Path(local_path)
        if not path.is_file():
            raise FileNotFoundError(f"Manifest not found: {path}")

        local_size = path.stat().st_size
        local_hash = file_sha256(path)
        remote_path = staging_object_name(base_remote_path, local_hash)

        with phase_span("upload", {"remote_path": remote_path, "size_bytes": local_size, "dry_run": dry_run}) as span:
            staged = self._upload(path, remote_path, local_size, local_hash, dry_run=dry_run)
            annotate(span, "upload", {"skipped": staged.skipped, "uri": staged.uri})
            return staged

    def _upload(self, path: Path, remote_path: str, local_size: int, local_hash: str, *, dry_run: bool) -> StagingObject:
        if not dry_run:
            self._retry(lambda: ensure_bucket(self._client, self._bucket, region=self._region), "ensure_bucket")

        existing = self._retry(lambda: stat_object_or_none(self._client, self._bucket, remote_path), "stat_object")
        if existing is not None:
            remote_size = int(existing.size)
            remote_hash = user_metadata_value(existing, FINGERPRINT_KEY)
            if remote_size == local_size and (remote_hash is None or remote_hash == local_hash):
                if remote_hash is None:
                    logger.warning(
                        "Remote object %s has no fingerprint; reusing it on size match only (%s bytes)",
                        remote_path,
                        remote_size,
                    )
                else:
                    logger.info("Remote object %s already matches the manifest; skipping upload", remote_path)
                return self._staging_object(remote_path, remote_size, local_hash, remote_hash, skipped=True)
            logger.info(
                "Remote object %s does not match the manifest (local %s bytes / %s, remote %s bytes / %s); replacing it",
                remote_path,
                local_size,
                local_hash[:12],
                remote_size,
                (remote_hash or "-")[:12],
            )
        else:
            logger.info("Remote object %s does not exist yet", remote_path)

        if dry_run:
            logger.info("Dry run: would upload %s (%s bytes) to %s", path, local_size, remote_path)
            return self._staging_object(remote_path, local_size, local_hash, None, skipped=False)

        logger.info("Uploading %s (%s bytes) to %s", path, local_size, object_uri(self._scheme, self._bucket, remote_path))
        self._retry(
            lambda: self._client.fput_object(
                self._bucket,
                remote_path,
                str(path),
                content_type=_CONTENT_TYPE,
                metadata={FINGERPRINT_KEY: local_hash, "uploaded-at": _utc_now_iso()},
                part_size=_PART_SIZE,
            ),
            "fput_object",
        )
        return self._verify(remote_path, local_size, local_hash)

    def _verify(self, remote_path: str, local_size: int, local_hash: str) -> StagingObject:
        stat = self._retry(lambda: stat_object_or_none(self._client, self._bucket, remote_path), "stat_object")
        if stat is None:
            raise StagingIntegrityError(f"Uploaded object {remote_path} is missing after upload")
        remote_size = int(stat.size)
        remote_hash = user_metadata_value(stat, FINGERPRINT_KEY)
        if remote_size != local_size:
            raise StagingIntegrityError(
                f"Size mismatch after upload of {remote_path}: local {local_size} bytes, remote {remote_size} bytes"
            )
        if remote_hash is not None and remote_hash != local_hash:
            raise StagingIntegrityError(f"Fingerprint mismatch after upload of {remote_path}")
        logger.info("Upload of %s verified (%s bytes)", remote_path, remote_size)
        return self._staging_object(remote_path, remote_size, local_hash, remote_hash, skipped=False)
