from __future__ import annotations

import logging
import os
from typing import Any

from celery import Celery
from kombu import Queue

from nab_batch.config import PipelineSettings
from nab_batch.exporter import STATUS_NOTHING_TO_DO
from nab_batch.models import BatchJob, JobState
from nab_batch.providers import factory
from nab_batch.staging import manifest_staging_uri

logger = logging.getLogger(__name__)

BROKER_URL = os.environ.get("NAB_REDIS_URL") or "redis://localhost:6379/0"
POLL_COUNTDOWN_SECONDS = int(os.environ.get("NAB_POLL_COUNTDOWN_SECONDS", "300"))

celery_app = Celery("nab_batch", broker=BROKER_URL, backend=BROKER_URL)
celery_app.conf.task_default_queue = "batch_io"
celery_app.conf.task_queues = (
    Queue("batch_io"),
    Queue("batch_poll"),
)
celery_app.conf.task_routes = {
    "nab_batch.tasks.export_manifest": {"queue": "batch_io"},
    "nab_batch.tasks.upload_manifest": {"queue": "batch_io"},
    "nab_batch.tasks.submit_job": {"queue": "batch_io"},
    "nab_batch.tasks.poll_batch_job": {"queue": "batch_poll"},
    "nab_batch.tasks.import_results": {"queue": "batch_io"},
}


def _settings() -> PipelineSettings:
    return PipelineSettings.from_env()


def _job_fields(job: BatchJob) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "name": job.name,
        "state": job.state.value,
        "native_state": job.native_state,
        "input_uri": job.input_uri,
        "output_uri": job.output_location,
    }


@celery_app.task(name="nab_batch.tasks.export_manifest")
def export_manifest(manifest_path: str | None = None, max_records: int | None = None) -> dict[str, Any]:
    settings = _settings().require("db")
    summary = factory.get_exporter(settings).export(manifest_path or settings.manifest_path, max_records=max_records)
    return summary.as_dict()


@celery_app.task(name="nab_batch.tasks.upload_manifest")
def upload_manifest(manifest_path: str | None = None, remote_path: str | None = None) -> dict[str, Any]:
    settings = _settings().require("storage")
    manifest_path = manifest_path or settings.manifest_path
    if os.path.isfile(manifest_path) and os.path.getsize(manifest_path) == 0:
        return {"status": STATUS_NOTHING_TO_DO, "manifest": manifest_path}
    staged = factory.get_uploader(settings).upload(
        manifest_path,
        remote_path or settings.staging_object,
    )
    return {"status": "ok", "uri": staged.uri, "size_bytes": staged.size_bytes, "sha256": staged.local_fingerprint, "skipped": staged.skipped}


@celery_app.task(name="nab_batch.tasks.submit_job")
def submit_job(input_uri: str | None = None, output_prefix: str | None = None, poll: bool = True) -> dict[str, Any]:
    settings = _settings().require("vertex", "storage")
    input_uri = input_uri or manifest_staging_uri(settings, settings.manifest_path)
    if input_uri is None:
        return {"status": STATUS_NOTHING_TO_DO, "created": False}
    outcome = factory.get_submitter(settings).submit(
        input_uri,
        output_prefix or settings.output_uri_prefix,
    )
    if outcome is None:
        return {"status": "skipped"}
    result = {"status": "ok", "created": outcome.created, **_job_fields(outcome.job)}
    if poll:
        celery_app.send_task(
            "nab_batch.tasks.poll_batch_job",
            kwargs={"job_name": outcome.job.name or outcome.job.job_id},
            countdown=POLL_COUNTDOWN_SECONDS,
        )
    return result


@celery_app.task(name="nab_batch.tasks.poll_batch_job", bind=True, max_retries=None)
def poll_batch_job(self, job_name: str) -> dict[str, Any]:
    """
    Check the job once. While it is still pending or running the task schedules itself again;
    on success the import is enqueued against the job's output location.
    """
    settings = _settings().require("vertex")
    submitter = factory.get_submitter(settings)
    job = submitter.refresh(BatchJob(job_id=job_name, name=job_name, input_uri="", output_uri_prefix="", state=JobState.PENDING))

    if not job.state.is_terminal:
        logger.info("Batch job %s is %s; checking again in %ss", job.job_id, job.native_state or job.state.value, POLL_COUNTDOWN_SECONDS)
        raise self.retry(countdown=POLL_COUNTDOWN_SECONDS)

    if job.state == JobState.FAILED:
        logger.error("Batch job %s finished as %s: %s", job.job_id, job.native_state, job.error)
        return {"status": "failed", **_job_fields(job), "error": job.error}

    celery_app.send_task(
        "nab_batch.tasks.import_results",
        kwargs={"output_uri": job.output_location, "job_name": job.name or job.job_id},
    )
    return {"status": "ok", **_job_fields(job)}


@celery_app.task(name="nab_batch.tasks.import_results")
def import_results(output_uri: str, job_name: str | None = None) -> dict[str, Any]:
    settings = _settings().require("db", "storage")
    summary = factory.get_importer(settings).import_results(output_uri, job_name=job_name)
    return summary.as_dict()
