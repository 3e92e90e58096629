"""Shared data models for pipeline runs, stages, events and artifacts."""
from __future__ import annotations

import json
import os
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from .errors import ConfigurationError


class EventType(str, Enum):
    """Repository events that may start a pipeline run."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"


class RunStatus(str, Enum):
    """Lifecycle states tracked for a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RepositoryEvent(BaseModel):
    """Structured repository event consumed by the trigger evaluator."""

    type: EventType
    branch: str
    commit: str = Field(..., description="Opaque commit identifier supplied by the caller.")
    committed_at: Optional[datetime] = Field(
        default=None,
        description="Commit timestamp, used only by the newest-commit latest-tag policy.",
    )

    @field_validator("branch")
    @classmethod
    def _strip_ref_prefix(cls, value: str) -> str:
        return branch_from_ref(value)

    @field_validator("commit")
    @classmethod
    def _require_commit(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("commit identifier must not be empty")
        return value

    @classmethod
    def from_github_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RepositoryEvent":
        """Build an event from the variables a GitHub Actions runner exports."""

        env = os.environ if environ is None else environ
        event_name = env.get("GITHUB_EVENT_NAME")
        commit = env.get("GITHUB_SHA")
        if not event_name or not commit:
            raise ConfigurationError("GITHUB_EVENT_NAME and GITHUB_SHA must both be set")
        try:
            event_type = EventType(event_name)
        except ValueError as exc:
            raise ConfigurationError(f"Unsupported repository event {event_name!r}") from exc

        if event_type is EventType.PULL_REQUEST:
            branch = env.get("GITHUB_HEAD_REF") or env.get("GITHUB_REF", "")
        else:
            branch = env.get("GITHUB_REF", "")

        committed_at = None
        event_path = env.get("GITHUB_EVENT_PATH")
        if event_path and Path(event_path).is_file():
            try:
                payload = json.loads(Path(event_path).read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                raise ConfigurationError(f"Cannot read event payload {event_path}: {exc}") from exc
            head_commit = payload.get("head_commit") if isinstance(payload, dict) else None
            timestamp = (head_commit or {}).get("timestamp")
            if timestamp:
                try:
                    committed_at = datetime.fromisoformat(str(timestamp).replace("Z", "+00:00"))
                except ValueError as exc:
                    raise ConfigurationError(f"Invalid head_commit.timestamp {timestamp!r}") from exc

        return cls(type=event_type, branch=branch, commit=commit, committed_at=committed_at)


def branch_from_ref(ref: str) -> str:
    ref = ref.strip()
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


class Stage(BaseModel):
    """A named unit of work with explicit dependencies and a terminal outcome."""

    name: str
    needs: Tuple[str, ...] = ()
    status: StageStatus = StageStatus.PENDING
    summary: str = ""
    error_kind: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Artifact(BaseModel):
    """A pushed, content-addressed image and the tags that pointed at it when published."""

    repository: str
    digest: Optional[str] = None
    image_id: Optional[str] = None
    commit: str
    tags: List[str] = Field(default_factory=list)

    def reference(self, tag: str) -> str:
        return f"{self.repository}:{tag}"


class PipelineRun(BaseModel):
    """One end-to-end execution triggered by a single repository event."""

    run_id: str
    event: RepositoryEvent
    status: RunStatus = RunStatus.PENDING
    stages: List[Stage] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    artifact: Optional[Artifact] = None
    error: Optional[str] = None

    @property
    def commit(self) -> str:
        return self.event.commit

    def stage(self, name: str) -> Stage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def stage_statuses(self) -> Dict[str, str]:
        return {stage.name: stage.status.value for stage in self.stages}

    def summary(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "commit": self.commit,
            "event": self.event.type.value,
            "branch": self.event.branch,
            "status": self.status.value,
            "stages": self.stage_statuses(),
            "error": self.error,
        }
