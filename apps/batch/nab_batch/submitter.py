from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from nab_batch.errors import DuplicateJobError, ExternalServiceError, JobListingError
from nab_batch.models import DEDUP_STATES, BatchJob, JobState
from nab_batch.observability.tracing import annotate, phase_span
from nab_batch.providers.batch_jobs import BatchJobProvider
from nab_batch.retry_utils import call_with_retries
from nab_batch.time_utils import _utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitOutcome:
    job: BatchJob
    created: bool


def _newest_first(job: BatchJob) -> str:
    return job.created_at or ""


class JobSubmitter:
    """
    Guarantees at most one live batch job per input manifest.

    Dedup is by input reference: existing jobs are listed and matched on their input URI, so
    nothing about previous runs needs to be stored locally. The list-then-create sequence is
    not atomic; only one pipeline instance may submit for a given manifest at a time.
    """

    def __init__(
        self,
        provider: BatchJobProvider,
        *,
        retries: int = 3,
        retry_base_seconds: float = 2.0,
        display_name_prefix: str = "nab_batch",
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._provider = provider
        self._retries = retries
        self._retry_base = retry_base_seconds
        self._display_name_prefix = display_name_prefix
        self._sleep = sleep

    def _retry(self, fn: Callable[[], Any], label: str) -> Any:
        kwargs: dict[str, Any] = {
            "attempts": self._retries,
            "base_delay_seconds": self._retry_base,
            "retry_on": (ExternalServiceError,),
        }
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return call_with_retries(fn, label=label, **kwargs)

    def find_existing(self, input_uri: str) -> BatchJob | None:
        """
        Return the job that already covers `input_uri`, if any.

        Active (pending/running) jobs win over succeeded ones; two active jobs for the same
        input mean the single-instance rule was broken and raise DuplicateJobError.
        """
        jobs = self._retry(self._provider.list_jobs, "list_jobs")
        matching = [j for j in jobs if j.input_uri == input_uri]
        for job in matching:
            if job.state == JobState.FAILED:
                logger.info("Ignoring %s job %s for %s", job.native_state or job.state.value, job.job_id, input_uri)

        active = [j for j in matching if j.state.is_active]
        if len(active) > 1:
            names = [j.name or j.job_id for j in active]
            raise DuplicateJobError(
                f"{len(active)} active batch jobs found for {input_uri}: {', '.join(names)}",
                job_names=names,
            )
        if active:
            return active[0]

        succeeded = sorted((j for j in matching if j.state in DEDUP_STATES), key=_newest_first, reverse=True)
        return succeeded[0] if succeeded else None

    def submit(
        self,
        input_uri: str,
        output_prefix: str,
        *,
        allow_unchecked: bool = False,
        dry_run: bool = False,
    ) -> SubmitOutcome | None:
        with phase_span("submit", {"input_uri": input_uri, "dry_run": dry_run}) as span:
            try:
                existing = self.find_existing(input_uri)
            except ExternalServiceError as exc:
                if not allow_unchecked:
                    raise JobListingError(
                        f"Could not list existing batch jobs ({exc}); refusing to submit without --allow-unchecked-submit"
                    ) from exc
                logger.warning("Could not list existing batch jobs (%s); submitting anyway on operator override", exc)
                existing = None

            if existing is not None:
                logger.info(
                    "Batch job %s already covers %s (state=%s); not submitting again",
                    existing.job_id,
                    input_uri,
                    existing.native_state or existing.state.value,
                )
                self._log_console_url(existing)
                annotate(span, "submit", {"job_id": existing.job_id, "state": existing.state.value, "created": False})
                return SubmitOutcome(job=existing, created=False)

            if dry_run:
                logger.info("Dry run: would submit a batch job for %s -> %s", input_uri, output_prefix)
                return None

            display_name = f"{self._display_name_prefix}_{_utc_now().strftime('%Y%m%dT%H%M%SZ')}"
            # Creation is never retried automatically: a timed-out create may still have succeeded.
            job = self._provider.create_job(
                input_uri=input_uri,
                output_uri_prefix=output_prefix,
                display_name=display_name,
            )
            logger.info("Submitted batch job %s (%s) for %s", job.job_id, job.native_state or job.state.value, input_uri)
            self._log_console_url(job)
            annotate(span, "submit", {"job_id": job.job_id, "state": job.state.value, "created": True})
            return SubmitOutcome(job=job, created=True)

    def poll_status(self, job: BatchJob) -> JobState:
        """Single non-blocking read of the job's current state; callers own the polling loop."""
        return self.refresh(job).state

    def refresh(self, job: BatchJob) -> BatchJob:
        return self._retry(lambda: self._provider.get_job(job.name or job.job_id), "get_job")

    def _log_console_url(self, job: BatchJob) -> None:
        url = self._provider.console_url(job)
        if url:
            logger.info("Monitor the job at %s", url)
