from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from tempfile import gettempdir
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError


UNVERSIONED = "unversioned"
CANONICAL_PORT = 8080
CANONICAL_RUNTIME_IMAGE = "debian:bookworm-slim"
CANONICAL_CONFIG_FILE = "config.toml"
SECRET_ENV_VARS = ("SHIPYARD_REGISTRY_TOKEN", "GHCR_PAT", "DEPLOY_KEY")


class LatestTagPolicy(str, Enum):
    """
    How the floating `latest` tag is repointed when runs overlap.

    `newest-commit` compares the commit time on the current `latest` image before
    pushing. That check-then-push is atomic only among runs in the same process;
    two `shipyard run` processes (one per CI event) can still interleave and the
    later push wins, as under `last-writer-wins`.
    """

    LAST_WRITER_WINS = "last-writer-wins"
    NEWEST_COMMIT = "newest-commit"


@dataclass
class SandboxPolicy:
    """Control which executables the command runner may launch."""

    allowed_executables: List[str] = field(default_factory=lambda: ["docker", "ssh"])
    command_timeout: Optional[float] = 3600.0
    # Never inherited by child processes; secrets reach them through stdin or key files only.
    scrubbed_env: List[str] = field(default_factory=lambda: list(SECRET_ENV_VARS))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed_executables": list(self.allowed_executables),
            "command_timeout": self.command_timeout,
            "scrubbed_env": list(self.scrubbed_env),
        }


@dataclass
class ImageConfig:
    """Naming scheme for the published artifact."""

    registry: str = "ghcr.io"
    owner: str = field(default_factory=lambda: os.getenv("GITHUB_REPOSITORY_OWNER", ""))
    name: str = "service"
    version_tag_length: int = 7
    latest_tag: str = "latest"
    latest_policy: LatestTagPolicy = LatestTagPolicy.LAST_WRITER_WINS

    @property
    def repository(self) -> str:
        if not self.owner:
            return f"{self.registry}/{self.name}"
        return f"{self.registry}/{self.owner}/{self.name}"


@dataclass
class BuildConfig:
    """
    Toolchain settings for the test and release Dockerfiles.

    Port, runtime base image and config file name are fixed by the image contract
    and intentionally not configurable.
    """

    builder_image: str = "rust:slim"
    binary_name: str = "service"
    manifest_files: List[str] = field(default_factory=lambda: ["Cargo.toml", "Cargo.lock"])
    source_dirs: List[str] = field(default_factory=lambda: ["src"])
    vendor_command: str = "mkdir -p .cargo && cargo vendor > .cargo/config.toml"
    test_command: str = "cargo test --offline --locked"
    build_command: str = "cargo install --offline --locked --path . --root /usr/local"
    binary_path: str = "/usr/local/bin/{binary}"
    dockerfile: Optional[str] = None
    test_dockerfile: Optional[str] = None

    @property
    def port(self) -> int:
        return CANONICAL_PORT

    @property
    def runtime_image(self) -> str:
        return CANONICAL_RUNTIME_IMAGE

    @property
    def config_file(self) -> str:
        return CANONICAL_CONFIG_FILE


@dataclass
class DeployConfig:
    """Remote deploy contract: one fixed script, no arguments."""

    script: str = "~/deploy-latest.sh"
    connect_timeout: int = 30


@dataclass
class PipelineConfig:
    """Top level configuration consumed throughout the pipeline."""

    release_branch: str = "master"
    source_dir: Path = field(default_factory=Path.cwd)
    work_root: Path = field(default_factory=lambda: Path(gettempdir()) / "shipyard")
    keep_workdir: bool = False
    dry_run: bool = False
    image: ImageConfig = field(default_factory=ImageConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    deploy: DeployConfig = field(default_factory=DeployConfig)
    sandbox: SandboxPolicy = field(default_factory=SandboxPolicy)

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON serialisable copy of the config for logging."""
        payload = asdict(self)
        payload["source_dir"] = str(self.source_dir)
        payload["work_root"] = str(self.work_root)
        payload["image"]["latest_policy"] = self.image.latest_policy.value
        payload["sandbox"] = self.sandbox.to_dict()
        return payload


def load_config(path: Optional[Path], dry_run: bool = False) -> PipelineConfig:
    """
    Load configuration from *path* if provided, otherwise use defaults.

    The configuration file is expected to be JSON. Unspecified fields fall back
    to the defaults baked into the dataclasses above.
    """
    config = PipelineConfig()
    config.dry_run = dry_run

    if path is None:
        return config

    try:
        with Path(path).expanduser().open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot read configuration {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration {path} must be a JSON object")

    _apply_config_updates(config, data)
    config.dry_run = dry_run or bool(data.get("dry_run", config.dry_run))
    return config


def _apply_config_updates(config: PipelineConfig, payload: Dict[str, Any]) -> None:
    """Update *config* in-place using keys from the *payload* dict."""
    if "release_branch" in payload:
        config.release_branch = str(payload["release_branch"])
    if "source_dir" in payload:
        config.source_dir = Path(payload["source_dir"]).expanduser()
    if "work_root" in payload:
        config.work_root = Path(payload["work_root"]).expanduser()
    if "keep_workdir" in payload:
        config.keep_workdir = bool(payload["keep_workdir"])

    for section in ("image", "build", "deploy", "sandbox"):
        if section in payload:
            _update_section(getattr(config, section), section, payload[section])

    if config.image.version_tag_length < 1:
        raise ConfigurationError("image.version_tag_length must be positive")


def _update_section(target: Any, section: str, values: Any) -> None:
    if not isinstance(values, dict):
        raise ConfigurationError(f"Configuration section {section!r} must be an object")
    known = {item.name: item for item in fields(target)}
    for key, value in values.items():
        if key in known:
            setattr(target, key, _coerce(f"{section}.{key}", known[key].type, value))


def _coerce(label: str, annotation: Any, value: Any) -> Any:
    """Check *value* against the field annotation, converting only where it is lossless."""
    annotation = annotation if isinstance(annotation, str) else getattr(annotation, "__name__", str(annotation))
    if annotation.startswith("Optional["):
        if value is None:
            return None
        annotation = annotation[len("Optional[") : -1]

    if annotation == "LatestTagPolicy":
        try:
            return LatestTagPolicy(value)
        except ValueError as exc:
            choices = ", ".join(policy.value for policy in LatestTagPolicy)
            raise ConfigurationError(f"{label} must be one of: {choices}") from exc
    if annotation == "List[str]":
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ConfigurationError(f"{label} must be a list of strings, got {value!r}")
        return list(value)
    if annotation == "bool":
        if not isinstance(value, bool):
            raise ConfigurationError(f"{label} must be true or false, got {value!r}")
        return value
    if annotation in ("int", "float"):
        # bool is an int subclass; `true` is never a valid number here.
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"{label} must be a number, got {value!r}")
        if annotation == "int":
            if not float(value).is_integer():
                raise ConfigurationError(f"{label} must be a whole number, got {value!r}")
            return int(value)
        return float(value)
    if annotation == "str":
        if not isinstance(value, str):
            raise ConfigurationError(f"{label} must be a string, got {value!r}")
        return value
    return value
