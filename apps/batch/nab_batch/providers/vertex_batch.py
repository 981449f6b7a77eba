from __future__ import annotations

import logging
from typing import Any

import httpx

from nab_batch.config import PipelineSettings
from nab_batch.errors import ExternalServiceError
from nab_batch.models import BatchJob, JobState
from nab_batch.providers.batch_jobs import BatchJobProvider

logger = logging.getLogger(__name__)

_NATIVE_STATES: dict[str, JobState] = {
    "JOB_STATE_QUEUED": JobState.PENDING,
    "JOB_STATE_PENDING": JobState.PENDING,
    "JOB_STATE_RUNNING": JobState.RUNNING,
    "JOB_STATE_UPDATING": JobState.RUNNING,
    "JOB_STATE_PAUSED": JobState.RUNNING,
    "JOB_STATE_CANCELLING": JobState.RUNNING,
    "JOB_STATE_SUCCEEDED": JobState.SUCCEEDED,
    "JOB_STATE_PARTIALLY_SUCCEEDED": JobState.SUCCEEDED,
    "JOB_STATE_FAILED": JobState.FAILED,
    "JOB_STATE_CANCELLED": JobState.FAILED,
    "JOB_STATE_EXPIRED": JobState.FAILED,
}

_PAGE_SIZE = 100
_MAX_PAGES = 1000


def map_native_state(native: str | None) -> JobState:
    if not native:
        return JobState.PENDING
    state = _NATIVE_STATES.get(native)
    if state is None:
        # Unknown states are treated as in-flight so they still block duplicate submission.
        logger.warning("Unknown batch job state %r; treating it as running", native)
        return JobState.RUNNING
    return state


def _job_from_payload(data: dict[str, Any]) -> BatchJob:
    name = str(data.get("name") or "")
    input_config = data.get("inputConfig") if isinstance(data.get("inputConfig"), dict) else {}
    gcs_source = input_config.get("gcsSource") if isinstance(input_config.get("gcsSource"), dict) else {}
    uris = gcs_source.get("uris") if isinstance(gcs_source.get("uris"), list) else []
    output_config = data.get("outputConfig") if isinstance(data.get("outputConfig"), dict) else {}
    destination = output_config.get("gcsDestination") if isinstance(output_config.get("gcsDestination"), dict) else {}
    output_info = data.get("outputInfo") if isinstance(data.get("outputInfo"), dict) else {}
    error = data.get("error") if isinstance(data.get("error"), dict) else {}
    native_state = data.get("state")
    return BatchJob(
        job_id=name.rsplit("/", 1)[-1],
        input_uri=str(uris[0]) if uris else "",
        output_uri_prefix=str(destination.get("outputUriPrefix") or ""),
        state=map_native_state(native_state),
        name=name,
        display_name=data.get("displayName"),
        native_state=native_state,
        output_directory=output_info.get("gcsOutputDirectory"),
        created_at=data.get("createTime"),
        error=error.get("message"),
    )


class VertexBatchJobProvider(BatchJobProvider):
    """
    Vertex AI batch prediction jobs over the REST API.
    """

    def __init__(
        self,
        *,
        project_id: str,
        location: str,
        access_token: str,
        model_id: str,
        api_base: str | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._project_id = project_id
        self._location = location
        self._token = access_token
        self._model_id = model_id
        self._api_base = (api_base or f"https://{location}-aiplatform.googleapis.com").rstrip("/")
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "VertexBatchJobProvider":
        settings.require("vertex")
        return cls(
            project_id=str(settings.gcp_project_id),
            location=settings.gcp_location,
            access_token=str(settings.vertex_access_token),
            model_id=settings.batch_model_id,
            api_base=settings.vertex_api_base,
        )

    @property
    def profile_family(self) -> str:
        return "gcp"

    @property
    def parent(self) -> str:
        return f"projects/{self._project_id}/locations/{self._location}"

    @property
    def model_name(self) -> str:
        if "/" in self._model_id:
            return self._model_id
        return f"publishers/google/models/{self._model_id}"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}", "Accept": "application/json"}

    def _request(self, method: str, path: str, *, params: dict[str, Any] | None = None, json_body: Any = None) -> dict[str, Any]:
        url = f"{self._api_base}/v1/{path.lstrip('/')}"
        try:
            with httpx.Client(timeout=self._timeout) as client:
                resp = client.request(method, url, params=params, json=json_body, headers=self._headers())
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text[:600] if exc.response is not None else ""
            raise ExternalServiceError(f"{method} {url} failed: {exc.response.status_code} {detail}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceError(f"{method} {url} failed: {exc}") from exc
        if not isinstance(data, dict):
            raise ExternalServiceError(f"{method} {url} returned an unexpected payload")
        return data

    def list_jobs(self) -> list[BatchJob]:
        jobs: list[BatchJob] = []
        page_token: str | None = None
        for _ in range(_MAX_PAGES):
            params: dict[str, Any] = {"pageSize": _PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            data = self._request("GET", f"{self.parent}/batchPredictionJobs", params=params)
            for item in data.get("batchPredictionJobs") or []:
                if isinstance(item, dict):
                    jobs.append(_job_from_payload(item))
            page_token = data.get("nextPageToken") or None
            if not page_token:
                return jobs
        raise ExternalServiceError(f"Job listing did not finish within {_MAX_PAGES} pages")

    def create_job(self, *, input_uri: str, output_uri_prefix: str, display_name: str) -> BatchJob:
        body = {
            "displayName": display_name,
            "model": self.model_name,
            "inputConfig": {
                "instancesFormat": "jsonl",
                "gcsSource": {"uris": [input_uri]},
            },
            "outputConfig": {
                "predictionsFormat": "jsonl",
                "gcsDestination": {"outputUriPrefix": output_uri_prefix},
            },
        }
        data = self._request("POST", f"{self.parent}/batchPredictionJobs", json_body=body)
        return _job_from_payload(data)

    def get_job(self, name: str) -> BatchJob:
        if "/" not in name:
            name = f"{self.parent}/batchPredictionJobs/{name}"
        return _job_from_payload(self._request("GET", name))

    def console_url(self, job: BatchJob) -> str | None:
        return (
            f"https://console.cloud.google.com/vertex-ai/locations/{self._location}"
            f"/batch-predictions/{job.job_id}?project={self._project_id}"
        )
