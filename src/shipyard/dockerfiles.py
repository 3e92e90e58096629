"""Canonical test and release Dockerfiles rendered from BuildConfig."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from .config import UNVERSIONED, BuildConfig

logger = logging.getLogger(__name__)

COMMIT_BUILD_ARG = "GIT_COMMIT_HASH"
COMMIT_TIME_BUILD_ARG = "SHIPYARD_COMMIT_TIME"
COMMIT_LABEL = "io.shipyard.commit"
COMMIT_TIME_LABEL = "io.shipyard.commit-time"

TEST_DOCKERFILE_NAME = "test.Dockerfile"
RELEASE_DOCKERFILE_NAME = "Dockerfile"

_TEST_TEMPLATE = """\
# syntax=docker/dockerfile:1
# Disposable test environment. Dependencies are vendored from the lock file,
# then the suite runs with networking disabled.
FROM {builder_image} AS test
WORKDIR /usr/src/app
{copy_manifests}
RUN {vendor_command}
{copy_sources}
RUN --network=none {test_command}
"""

_RELEASE_TEMPLATE = """\
# syntax=docker/dockerfile:1
# Stage 1: compile against the vendored lock file
FROM {builder_image} AS builder
WORKDIR /usr/src/app
{copy_manifests}
RUN {vendor_command}
{copy_sources}
RUN --network=none {build_command}

# Stage 2: binary and config only, no toolchain
FROM {runtime_image} AS final
ARG {commit_arg}={unversioned}
ARG {commit_time_arg}=
ENV {commit_arg}=${{{commit_arg}}}
LABEL {commit_label}="${{{commit_arg}}}" {commit_time_label}="${{{commit_time_arg}}}"
COPY --from=builder {binary_path} /bin/{binary}
COPY {config_file} /bin/{config_file}
WORKDIR /bin
EXPOSE {port}
CMD ["{binary}", "{config_file}"]
"""


def _copy_lines(build: BuildConfig) -> Dict[str, str]:
    manifests = " ".join(build.manifest_files)
    return {
        "copy_manifests": f"COPY {manifests} ./" if manifests else "",
        "copy_sources": "\n".join(f"COPY {entry} ./{entry}" for entry in build.source_dirs),
    }


def render_test_dockerfile(build: BuildConfig) -> str:
    return _TEST_TEMPLATE.format(
        builder_image=build.builder_image,
        vendor_command=build.vendor_command,
        test_command=build.test_command,
        **_copy_lines(build),
    )


def render_release_dockerfile(build: BuildConfig) -> str:
    return _RELEASE_TEMPLATE.format(
        builder_image=build.builder_image,
        runtime_image=build.runtime_image,
        vendor_command=build.vendor_command,
        build_command=build.build_command,
        binary_path=build.binary_path.format(binary=build.binary_name),
        binary=build.binary_name,
        config_file=build.config_file,
        port=build.port,
        commit_arg=COMMIT_BUILD_ARG,
        commit_time_arg=COMMIT_TIME_BUILD_ARG,
        commit_label=COMMIT_LABEL,
        commit_time_label=COMMIT_TIME_LABEL,
        unversioned=UNVERSIONED,
        **_copy_lines(build),
    )


def write_dockerfiles(build: BuildConfig, output_dir: Path) -> Dict[str, Path]:
    """Write both canonical Dockerfiles into *output_dir*."""
    root = Path(output_dir)
    root.mkdir(parents=True, exist_ok=True)
    written = {}
    for name, content in (
        (TEST_DOCKERFILE_NAME, render_test_dockerfile(build)),
        (RELEASE_DOCKERFILE_NAME, render_release_dockerfile(build)),
    ):
        path = root / name
        path.write_text(content, encoding="utf-8")
        logger.info("%s written: %s", name, path)
        written[name] = path
    return written


def resolve_dockerfile(
    override: Optional[str],
    rendered: str,
    name: str,
    source_dir: Path,
    workdir: Path,
) -> Path:
    """Return the repository's own Dockerfile when configured, else a rendered copy in *workdir*."""
    if override:
        path = Path(override)
        return path if path.is_absolute() else Path(source_dir) / path
    path = Path(workdir) / name
    path.write_text(rendered, encoding="utf-8")
    return path
