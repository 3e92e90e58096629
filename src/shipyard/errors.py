from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(PipelineError):
    """Raised when configuration or tag material is invalid before a run starts."""


class StageFailure(PipelineError):
    """A stage finished unsuccessfully; every dependent stage is skipped."""

    kind = "stage"

    def __init__(self, stage: str, cause: str) -> None:
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause


class CredentialFailure(StageFailure):
    """
    Registry or deploy authentication failed, or the secret was never supplied.

    Raised before any push or deploy action, so no artifact side effect occurred.
    """

    kind = "credential"


class NetworkFailure(StageFailure):
    """Push or remote-session failure. Never retried; the whole run must be re-run."""

    kind = "network"

    def __init__(self, stage: str, cause: str, tags_desynchronized: bool = False) -> None:
        super().__init__(stage, cause)
        self.tags_desynchronized = tags_desynchronized
