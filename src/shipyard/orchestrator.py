from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .config import PipelineConfig
from .credentials import CredentialProvider, EnvironmentCredentialProvider
from .models import PipelineRun, RepositoryEvent, RunStatus
from .sandbox import CommandRunner
from .scheduler import StageGraph, StageScheduler
from .stages.base import StageContext, StageHandler, StageResult
from .stages.publisher import version_tag
from .trigger import eligible_stages
from .workspace import WorkspaceManager


LOGGER = logging.getLogger("shipyard.orchestrator")


@dataclass
class RunResult:
    """Outcome of one pipeline run. The run itself is not archived anywhere."""

    run: PipelineRun
    eligible: List[str]
    results: Dict[str, StageResult] = field(default_factory=dict)

    @property
    def status(self) -> RunStatus:
        return self.run.status

    @property
    def succeeded(self) -> bool:
        return self.run.status is RunStatus.SUCCEEDED


class RunController:
    """Turn a repository event into a gated test -> build -> push -> deploy run."""

    def __init__(
        self,
        config: PipelineConfig,
        stages: Iterable[StageHandler],
        credentials: Optional[CredentialProvider] = None,
        workspace_manager: Optional[WorkspaceManager] = None,
    ) -> None:
        self._config = config
        self._graph = StageGraph(list(stages))
        self._credentials = credentials or EnvironmentCredentialProvider()
        self._workspace = workspace_manager or WorkspaceManager(config.work_root)
        self._logger = LOGGER

    def execute(self, event: RepositoryEvent, run_id: Optional[str] = None) -> RunResult:
        """Run every eligible stage for *event* and return the terminal run."""
        # Fails fast on commits that cannot be turned into an image tag.
        version_tag(event.commit, self._config.image.version_tag_length)

        run = PipelineRun(run_id=run_id or generate_run_id(), event=event)
        eligible = eligible_stages(event, self._config.release_branch)
        self._logger.info(
            "Run %s for %s on %s (%s); eligible stages: %s",
            run.run_id,
            event.type.value,
            event.branch,
            event.commit,
            ", ".join(eligible),
        )

        run.started_at = datetime.now(timezone.utc)
        workdir = self._workspace.create(run.run_id)
        try:
            context = StageContext(
                run=run,
                config=self._config,
                runner=CommandRunner(workdir, dry_run=self._config.dry_run, policy=self._config.sandbox),
                workdir=workdir,
            )
            StageScheduler(self._graph, self._credentials).run(run, eligible, context)
        finally:
            run.completed_at = datetime.now(timezone.utc)
            self._workspace.discard(workdir, keep=self._config.keep_workdir)

        duration = (run.completed_at - run.started_at).total_seconds()
        self._logger.info("Run %s finished with status %s in %.1fs", run.run_id, run.status.value, duration)
        return RunResult(run=run, eligible=eligible, results=dict(context.outputs))


def generate_run_id() -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    suffix = uuid.uuid4().hex[:6]
    return f"run-{timestamp}-{suffix}"
