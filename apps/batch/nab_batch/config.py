from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Mapping

from nab_batch.errors import ConfigurationError

# Environment variables each requirement group needs before a phase may start.
_REQUIRED_ENV: dict[str, tuple[tuple[str, str], ...]] = {
    "db": (("db_dsn", "NAB_DB_DSN"),),
    "storage": (
        ("s3_endpoint", "NAB_S3_ENDPOINT"),
        ("s3_access_key", "NAB_S3_ACCESS_KEY"),
        ("s3_secret_key", "NAB_S3_SECRET_KEY"),
        ("s3_bucket", "NAB_S3_BUCKET"),
    ),
    "vertex": (
        ("gcp_project_id", "NAB_GCP_PROJECT_ID"),
        ("vertex_access_token", "NAB_VERTEX_ACCESS_TOKEN"),
    ),
}


def _env_int(env: Mapping[str, str], key: str, default: int, *, minimum: int = 1) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from exc
    return max(minimum, value)


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return max(0.0, float(raw))
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class PipelineSettings:
    db_dsn: str | None = None
    db_pool_max: int = 6

    s3_endpoint: str | None = None
    s3_access_key: str | None = None
    s3_secret_key: str | None = None
    s3_bucket: str | None = None
    s3_region: str | None = None
    object_uri_scheme: str = "gs"

    manifest_path: str = "data/exports/batch_input.jsonl"
    staging_object: str = "staging/batch_input.jsonl"
    output_prefix: str = "predictions/"

    gcp_project_id: str | None = None
    gcp_location: str = "us-central1"
    vertex_access_token: str | None = None
    vertex_api_base: str | None = None
    batch_model_id: str = "gemini-2.0-flash-001"

    export_page_size: int = 500
    mark_batch_size: int = 1000
    upsert_batch_size: int = 1000
    import_log_interval: int = 1000
    export_max_payload_chars: int = 100_000
    network_retries: int = 3
    network_retry_base_seconds: float = 2.0

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "PipelineSettings":
        env = os.environ if env is None else env
        return cls(
            db_dsn=env.get("NAB_DB_DSN") or None,
            db_pool_max=min(_env_int(env, "NAB_DB_POOL_MAX", 6), 32),
            s3_endpoint=env.get("NAB_S3_ENDPOINT") or None,
            s3_access_key=env.get("NAB_S3_ACCESS_KEY") or None,
            s3_secret_key=env.get("NAB_S3_SECRET_KEY") or None,
            s3_bucket=env.get("NAB_S3_BUCKET") or None,
            s3_region=env.get("NAB_S3_REGION") or None,
            object_uri_scheme=env.get("NAB_OBJECT_URI_SCHEME") or "gs",
            manifest_path=env.get("NAB_MANIFEST_PATH") or "data/exports/batch_input.jsonl",
            staging_object=(env.get("NAB_STAGING_OBJECT") or "staging/batch_input.jsonl").lstrip("/"),
            output_prefix=(env.get("NAB_OUTPUT_PREFIX") or "predictions/").lstrip("/"),
            gcp_project_id=env.get("NAB_GCP_PROJECT_ID") or None,
            gcp_location=env.get("NAB_GCP_LOCATION") or "us-central1",
            vertex_access_token=env.get("NAB_VERTEX_ACCESS_TOKEN") or None,
            vertex_api_base=env.get("NAB_VERTEX_API_BASE") or None,
            batch_model_id=env.get("NAB_BATCH_MODEL_ID") or "gemini-2.0-flash-001",
            export_page_size=_env_int(env, "NAB_EXPORT_PAGE_SIZE", 500),
            mark_batch_size=_env_int(env, "NAB_MARK_BATCH_SIZE", 1000),
            upsert_batch_size=_env_int(env, "NAB_UPSERT_BATCH_SIZE", 1000),
            import_log_interval=_env_int(env, "NAB_IMPORT_LOG_INTERVAL", 1000),
            export_max_payload_chars=_env_int(env, "NAB_EXPORT_MAX_PAYLOAD_CHARS", 100_000),
            network_retries=_env_int(env, "NAB_NETWORK_RETRIES", 3),
            network_retry_base_seconds=_env_float(env, "NAB_NETWORK_RETRY_BASE_SECONDS", 2.0),
        )

    def require(self, *groups: str) -> "PipelineSettings":
        """
        Fail fast when a phase is missing configuration.

        Raises a single ConfigurationError naming every missing variable across the
        requested groups, so the operator can fix them in one go.
        """
        missing: list[str] = []
        for group in groups:
            if group not in _REQUIRED_ENV:
                raise ValueError(f"unknown requirement group: {group}")
            for attr, env_key in _REQUIRED_ENV[group]:
                if not getattr(self, attr):
                    missing.append(env_key)
        if missing:
            raise ConfigurationError(
                "Missing required configuration: " + ", ".join(missing),
                missing=missing,
            )
        return self

    @property
    def output_uri_prefix(self) -> str:
        return f"{self.object_uri_scheme}://{self.s3_bucket}/{self.output_prefix}"

    def redacted(self) -> dict[str, object]:
        secret = {"s3_secret_key", "s3_access_key", "vertex_access_token", "db_dsn"}
        out: dict[str, object] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = "***" if f.name in secret and value else value
        return out
