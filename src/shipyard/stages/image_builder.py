from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import UNVERSIONED, PipelineConfig
from ..credentials import Credential
from ..dockerfiles import (
    COMMIT_BUILD_ARG,
    COMMIT_TIME_BUILD_ARG,
    RELEASE_DOCKERFILE_NAME,
    render_release_dockerfile,
    resolve_dockerfile,
)
from ..errors import ConfigurationError, StageFailure
from ..sandbox import CommandRunner
from ..trigger import BUILD_STAGE, TEST_STAGE
from .base import StageContext, StageHandler, StageResult
from .publisher import version_tag


LOGGER = logging.getLogger("shipyard.stages.build")


@dataclass
class BuiltImage:
    local_ref: str
    image_id: Optional[str]
    embedded_commit: str
    commit_time: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def resolve_build_commit(commit: Optional[str]) -> str:
    """The value baked into GIT_COMMIT_HASH: the short commit, or `unversioned`."""
    if commit is None or not commit.strip():
        return UNVERSIONED
    return commit.strip()


def local_reference(image_name: str, run_id: str) -> str:
    """A run-unique local tag, so concurrent runs never overwrite each other's build."""
    safe_name = re.sub(r"[^a-z0-9._-]", "-", image_name.lower()) or "image"
    safe_run = re.sub(r"[^A-Za-z0-9_.-]", "-", run_id)[:128]
    return f"{safe_name}-build:{safe_run}"


def build_image(
    runner: CommandRunner,
    config: PipelineConfig,
    workdir: Path,
    local_ref: str,
    commit: Optional[str] = None,
    committed_at: Optional[datetime] = None,
    stage: str = BUILD_STAGE,
) -> BuiltImage:
    """Run the two-phase release build and return the local image it produced."""
    build = config.build
    dockerfile = resolve_dockerfile(
        build.dockerfile,
        render_release_dockerfile(build),
        RELEASE_DOCKERFILE_NAME,
        config.source_dir,
        workdir,
    )
    command: List[str] = [
        "docker",
        "build",
        "--file",
        str(dockerfile),
        "--tag",
        local_ref,
        "--progress",
        "plain",
    ]
    if commit:
        command.extend(["--build-arg", f"{COMMIT_BUILD_ARG}={commit}"])
    commit_time = committed_at.isoformat() if committed_at else None
    if commit_time:
        command.extend(["--build-arg", f"{COMMIT_TIME_BUILD_ARG}={commit_time}"])
    command.append(str(config.source_dir))

    LOGGER.info("Building %s", local_ref)
    result = runner.run(command, cwd=config.source_dir, env={"DOCKER_BUILDKIT": "1"})
    if result.reason == "missing-executable":
        raise StageFailure(stage, "docker is not available on this host")
    if not result.ok:
        raise StageFailure(stage, f"image build failed with exit code {result.return_code}")

    inspected = runner.run(["docker", "image", "inspect", "--format", "{{.Id}}", local_ref])
    image_id = inspected.stdout.strip() if inspected.ok and inspected.stdout.strip() else None
    return BuiltImage(
        local_ref=local_ref,
        image_id=image_id,
        embedded_commit=resolve_build_commit(commit),
        commit_time=commit_time,
    )


class ImageBuilder(StageHandler):
    name = BUILD_STAGE
    needs = (TEST_STAGE,)

    def execute(self, context: StageContext, credential: Optional[Credential]) -> StageResult:
        run = context.run
        try:
            short_commit = version_tag(run.commit, context.config.image.version_tag_length)
        except ConfigurationError as exc:
            raise StageFailure(self.name, str(exc)) from exc
        image = build_image(
            context.runner,
            context.config,
            context.workdir,
            local_reference(context.config.image.name, run.run_id),
            commit=short_commit,
            committed_at=run.event.committed_at,
            stage=self.name,
        )
        return StageResult(
            name=self.name,
            summary=f"Built {image.local_ref} for commit {image.embedded_commit}.",
            details=image.to_dict(),
        )
