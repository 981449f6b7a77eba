from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ExportState(str, Enum):
    PENDING = "pending"
    EXPORTED = "exported"


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (JobState.PENDING, JobState.RUNNING)


# States in which an existing job already covers an input and blocks a new submission.
DEDUP_STATES = frozenset({JobState.PENDING, JobState.RUNNING, JobState.SUCCEEDED})


@dataclass(frozen=True)
class SourceRecord:
    id: str
    payload: Any
    export_state: ExportState = ExportState.PENDING


@dataclass(frozen=True)
class ManifestEntry:
    record_id: str
    request_payload: dict[str, Any]

    def to_line(self) -> str:
        # The record id travels inside the request (labels) so the service echoes it back.
        return json.dumps({"request": self.request_payload}, ensure_ascii=False, separators=(",", ":")) + "\n"


@dataclass(frozen=True)
class StagingObject:
    remote_path: str
    size_bytes: int
    local_fingerprint: str
    uri: str
    remote_fingerprint: str | None = None
    skipped: bool = False


@dataclass(frozen=True)
class BatchJob:
    job_id: str
    input_uri: str
    output_uri_prefix: str
    state: JobState
    name: str = ""
    display_name: str | None = None
    native_state: str | None = None
    output_directory: str | None = None
    created_at: str | None = None
    error: str | None = None

    @property
    def output_location(self) -> str:
        return self.output_directory or self.output_uri_prefix


@dataclass
class AnalysisResult:
    original_record_id: str | None
    intent: str | None
    struggle_score: int
    tech_context: str | None
    is_milestone: bool
    imported_at: datetime
    natural_key: str | None = None
    prompt_excerpt: str | None = None
    payload_hash: str | None = None
    source: str = "vertex_batch"
    job_name: str | None = None
    output_object: str | None = None

    @property
    def upsert_key(self) -> tuple[str, str]:
        if self.original_record_id:
            return ("record", self.original_record_id)
        return ("natural", self.natural_key or "")


@dataclass
class MarkResult:
    requested: int = 0
    marked: int = 0
    failed_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_ids


@dataclass
class UpsertCounts:
    inserted: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated


@dataclass
class ExportSummary:
    status: str
    manifest_path: str
    exported: int = 0
    skipped: int = 0
    bytes_written: int = 0
    marked: int = 0
    mark_failed: int = 0
    dry_run: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImportSummary:
    objects: int = 0
    objects_failed: int = 0
    lines: int = 0
    parsed: int = 0
    failed: int = 0
    fallback_matches: int = 0
    imported: int = 0
    inserted: int = 0
    updated: int = 0
    upsert_failed: int = 0
    dry_run: bool = False
    failed_objects: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)
