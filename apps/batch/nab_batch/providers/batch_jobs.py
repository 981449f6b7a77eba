from __future__ import annotations

import abc

from nab_batch.models import BatchJob
from nab_batch.providers.base import Provider


class BatchJobProvider(Provider):
    """
    Interface for an external asynchronous batch inference service.
    Jobs are only ever created and read; state transitions belong to the service.
    """

    @abc.abstractmethod
    def list_jobs(self) -> list[BatchJob]:
        """
        Lists every job visible to the configured project, across all pages.
        Raises on any listing failure; a partial listing is never returned.
        """
        pass

    @abc.abstractmethod
    def create_job(self, *, input_uri: str, output_uri_prefix: str, display_name: str) -> BatchJob:
        """Creates one job reading `input_uri` and writing under `output_uri_prefix`."""
        pass

    @abc.abstractmethod
    def get_job(self, name: str) -> BatchJob:
        """Reads the current state of one job by resource name."""
        pass

    def console_url(self, job: BatchJob) -> str | None:
        """Optional link for operators to monitor the job."""
        return None
