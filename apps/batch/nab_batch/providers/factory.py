from __future__ import annotations

import os

from nab_batch.blob_store import minio_client
from nab_batch.config import PipelineSettings
from nab_batch.db import init_db_pool
from nab_batch.exporter import Exporter
from nab_batch.importer import ResultImporter
from nab_batch.providers.batch_jobs import BatchJobProvider
from nab_batch.providers.vertex_batch import VertexBatchJobProvider
from nab_batch.record_store import PostgresRecordStore, RecordStore
from nab_batch.result_store import PostgresResultStore, ResultStore
from nab_batch.staging import StagingUploader
from nab_batch.submitter import JobSubmitter


def get_record_store(settings: PipelineSettings) -> RecordStore:
    settings.require("db")
    init_db_pool(settings.db_dsn, settings.db_pool_max)
    return PostgresRecordStore()


def get_result_store(settings: PipelineSettings) -> ResultStore:
    settings.require("db")
    init_db_pool(settings.db_dsn, settings.db_pool_max)
    return PostgresResultStore()


def get_batch_job_provider(settings: PipelineSettings) -> BatchJobProvider:
    """
    Returns the configured BatchJobProvider.
    Currently only supports 'gcp' (Vertex AI batch prediction).
    """
    profile = os.environ.get("NAB_PROFILE", "gcp")
    if profile != "gcp":
        raise NotImplementedError(f"Batch job provider for profile {profile!r} not implemented yet")
    return VertexBatchJobProvider.from_settings(settings)


def get_exporter(settings: PipelineSettings) -> Exporter:
    return Exporter(
        get_record_store(settings),
        page_size=settings.export_page_size,
        mark_batch_size=settings.mark_batch_size,
        max_payload_chars=settings.export_max_payload_chars,
    )


def get_uploader(settings: PipelineSettings) -> StagingUploader:
    return StagingUploader(
        minio_client(settings),
        str(settings.s3_bucket),
        uri_scheme=settings.object_uri_scheme,
        region=settings.s3_region,
        retries=settings.network_retries,
        retry_base_seconds=settings.network_retry_base_seconds,
    )


def get_submitter(settings: PipelineSettings) -> JobSubmitter:
    return JobSubmitter(
        get_batch_job_provider(settings),
        retries=settings.network_retries,
        retry_base_seconds=settings.network_retry_base_seconds,
    )


def get_importer(settings: PipelineSettings) -> ResultImporter:
    return ResultImporter(
        minio_client(settings),
        get_result_store(settings),
        batch_size=settings.upsert_batch_size,
        log_interval=settings.import_log_interval,
        retries=settings.network_retries,
        retry_base_seconds=settings.network_retry_base_seconds,
    )
