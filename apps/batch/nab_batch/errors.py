"""Error hierarchy for the batch pipeline.

Error layers:
- ConfigurationError: missing credentials or endpoints, raised before any state is touched
- InvariantViolation: data corruption or duplicate remote work, the phase must stop
- JobListingError / ExternalServiceError: remote calls that could not be completed

Structural problems with individual manifest or output lines are never raised; they are
counted in the phase summary instead.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    exit_code = 1

    def __init__(self, message: str, code: str | None = None) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        super().__init__(message)


class ConfigurationError(PipelineError):
    """Required configuration is missing or malformed."""

    exit_code = 2

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR")
        self.missing = list(missing or [])


class InvariantViolation(PipelineError):
    """A cross-phase invariant no longer holds; operator intervention required."""


class StagingIntegrityError(InvariantViolation):
    """The uploaded staging object does not match the local manifest."""


class DuplicateJobError(InvariantViolation):
    """More than one active batch job exists for the same input."""

    def __init__(self, message: str, job_names: list[str] | None = None) -> None:
        super().__init__(message, code="DUPLICATE_JOB")
        self.job_names = list(job_names or [])


class JobListingError(PipelineError):
    """Existing jobs could not be listed, so submission cannot be deduplicated."""


class ExternalServiceError(PipelineError):
    """A remote service call failed after all retries."""
