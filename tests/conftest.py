from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Iterable, Iterator

import pytest

from nab_batch.errors import ExternalServiceError
from nab_batch.models import AnalysisResult, BatchJob, ExportState, JobState, MarkResult, SourceRecord, UpsertCounts
from nab_batch.providers.batch_jobs import BatchJobProvider
from nab_batch.record_store import RecordStore
from nab_batch.result_store import ResultStore


class FakeS3Error(Exception):
    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


class FakeResponse:
    def __init__(self, data: bytes, fail_after: int | None = None) -> None:
        self._data = data
        self._fail_after = fail_after
        self.closed = False
        self.released = False

    def stream(self, amt: int) -> Iterator[bytes]:
        for index, start in enumerate(range(0, len(self._data), 7)):
            if self._fail_after is not None and index >= self._fail_after:
                raise ConnectionError("connection reset")
            yield self._data[start : start + 7]

    def close(self) -> None:
        self.closed = True

    def release_conn(self) -> None:
        self.released = True


class FakeMinio:
    """In-memory stand-in for the MinIO client methods the pipeline calls."""

    def __init__(self) -> None:
        self.buckets: set[str] = set()
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.transfers = 0
        self.broken_objects: set[str] = set()
        self.corrupt_uploads = False

    def bucket_exists(self, bucket: str) -> bool:
        return bucket in self.buckets

    def make_bucket(self, bucket: str, location: str | None = None) -> None:
        self.buckets.add(bucket)

    def put_bytes(self, bucket: str, name: str, data: bytes, metadata: dict[str, str] | None = None) -> None:
        self.buckets.add(bucket)
        self.objects[(bucket, name)] = {"data": data, "metadata": dict(metadata or {})}

    def fput_object(self, bucket: str, name: str, file_path: str, content_type: str = "", metadata: dict | None = None, part_size: int = 0) -> Any:
        self.transfers += 1
        data = Path(file_path).read_bytes()
        if self.corrupt_uploads:
            data = data[:-1]
        meta = {f"x-amz-meta-{k}": v for k, v in (metadata or {}).items()}
        self.objects[(bucket, name)] = {"data": data, "metadata": meta}
        return SimpleNamespace(object_name=name, etag="etag")

    def stat_object(self, bucket: str, name: str) -> Any:
        obj = self.objects.get((bucket, name))
        if obj is None:
            raise FakeS3Error("NoSuchKey")
        return SimpleNamespace(size=len(obj["data"]), metadata=obj["metadata"])

    def list_objects(self, bucket: str, prefix: str = "", recursive: bool = False) -> Iterator[Any]:
        for (b, name) in sorted(self.objects):
            if b == bucket and name.startswith(prefix):
                yield SimpleNamespace(object_name=name, is_dir=False)

    def get_object(self, bucket: str, name: str) -> FakeResponse:
        obj = self.objects.get((bucket, name))
        if obj is None:
            raise FakeS3Error("NoSuchKey")
        return FakeResponse(obj["data"], fail_after=1 if name in self.broken_objects else None)


class FakeRecordStore(RecordStore):
    def __init__(self, payloads: dict[str, Any] | None = None) -> None:
        self.records: dict[str, dict[str, Any]] = {}
        self.fail_mark = False
        self.mark_calls = 0
        for record_id, payload in (payloads or {}).items():
            self.add(record_id, payload)

    def add(self, record_id: str, payload: Any) -> None:
        self.records[record_id] = {"payload": payload, "state": ExportState.PENDING}

    def state(self, record_id: str) -> ExportState:
        return self.records[record_id]["state"]

    def stream_unexported(self, page_size: int = 500) -> Iterator[SourceRecord]:
        for record_id in sorted(self.records):
            row = self.records[record_id]
            if row["state"] == ExportState.PENDING:
                yield SourceRecord(id=record_id, payload=row["payload"])

    def mark_exported(self, ids: Iterable[str], batch_size: int = 1000) -> MarkResult:
        self.mark_calls += 1
        unique = sorted(set(ids))
        result = MarkResult(requested=len(unique))
        if self.fail_mark:
            result.failed_ids.extend(unique)
            result.errors.append("batch=0:database unavailable")
            return result
        for record_id in unique:
            if self.records[record_id]["state"] == ExportState.PENDING:
                self.records[record_id]["state"] = ExportState.EXPORTED
                result.marked += 1
        return result

    def count_by_state(self) -> dict[str, int]:
        counts = {state.value: 0 for state in ExportState}
        for row in self.records.values():
            counts[row["state"].value] += 1
        return counts


class FakeResultStore(ResultStore):
    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], AnalysisResult] = {}
        self.calls = 0
        self.fail = False

    def upsert_results(self, results) -> UpsertCounts:
        self.calls += 1
        if self.fail:
            raise RuntimeError("deadlock detected")
        counts = UpsertCounts()
        for result in results:
            if result.upsert_key in self.rows:
                counts.updated += 1
            else:
                counts.inserted += 1
            self.rows[result.upsert_key] = result
        return counts


def batch_job(job_id, state, *, input_uri="gs://bucket/staging/batch_input.jsonl", output_uri_prefix="gs://bucket/predictions/", created_at="2026-01-01"):
    return BatchJob(
        job_id=job_id,
        name=f"projects/p/locations/l/batchPredictionJobs/{job_id}",
        input_uri=input_uri,
        output_uri_prefix=output_uri_prefix,
        state=state,
        created_at=created_at,
    )


class FakeBatchProvider(BatchJobProvider):
    def __init__(self, jobs=None):
        self.jobs = list(jobs or [])
        self.created = 0
        self.list_failures = 0

    @property
    def profile_family(self):
        return "gcp"

    def list_jobs(self):
        if self.list_failures:
            self.list_failures -= 1
            raise ExternalServiceError("GET batchPredictionJobs failed: 503")
        return list(self.jobs)

    def create_job(self, *, input_uri, output_uri_prefix, display_name):
        self.created += 1
        job = batch_job(
            f"J{len(self.jobs) + 1}",
            JobState.PENDING,
            input_uri=input_uri,
            output_uri_prefix=output_uri_prefix,
            created_at=f"2026-01-0{self.created}",
        )
        self.jobs.append(job)
        return job

    def get_job(self, name):
        for job in self.jobs:
            if name in (job.name, job.job_id):
                return job
        raise ExternalServiceError(f"{name} not found")

    def set_state(self, job_id, state):
        for index, job in enumerate(self.jobs):
            if job.job_id == job_id:
                self.jobs[index] = batch_job(
                    job_id, state, input_uri=job.input_uri, output_uri_prefix=job.output_uri_prefix, created_at=job.created_at
                )


def gemini_line(record_id: str | None, answer: Any, *, prompt: str = "Dev Log: hello") -> str:
    """One batch output line the way the service echoes a request next to its response."""
    request: dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
    if record_id is not None:
        request["labels"] = {"record_id": record_id, "payload_hash": "0" * 32}
    text = answer if isinstance(answer, str) else json.dumps(answer)
    return json.dumps(
        {
            "request": request,
            "response": {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]},
        }
    )


@pytest.fixture
def fake_minio(monkeypatch):
    monkeypatch.setattr("nab_batch.blob_store.S3Error", FakeS3Error)
    return FakeMinio()


@pytest.fixture
def record_store():
    return FakeRecordStore()


@pytest.fixture
def result_store():
    return FakeResultStore()


@pytest.fixture
def no_sleep():
    return lambda seconds: None
