"""Contract shared by every pipeline stage."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..config import PipelineConfig
from ..credentials import Credential, CredentialKind
from ..models import PipelineRun
from ..sandbox import CommandRunner


@dataclass
class StageResult:
    """Structured payload returned by a successful stage."""

    name: str
    summary: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StageContext:
    """State shared across the stages of one run. Holds no secrets."""

    run: PipelineRun
    config: PipelineConfig
    runner: CommandRunner
    workdir: Path
    outputs: Dict[str, StageResult] = field(default_factory=dict)


class StageHandler:
    """
    Base protocol for pipeline stages.

    `needs` lists the stages that must have succeeded first. `credential` names
    the only secret the stage receives; stages leaving it as None are handed
    nothing.
    """

    name: str
    needs: Tuple[str, ...] = ()
    credential: Optional[CredentialKind] = None

    def execute(self, context: StageContext, credential: Optional[Credential]) -> StageResult:  # pragma: no cover - documentation method
        raise NotImplementedError
