from __future__ import annotations

import logging
import shutil
from pathlib import Path


LOGGER = logging.getLogger("shipyard.workspace")


class WorkspaceManager:
    """Create and discard the scratch directory owned by a single run."""

    def __init__(self, work_root: Path) -> None:
        self._work_root = Path(work_root)
        self._work_root.mkdir(parents=True, exist_ok=True)

    def create(self, run_id: str) -> Path:
        """Create an empty work directory for *run_id*."""
        workdir = self._work_root / run_id
        if workdir.exists():
            shutil.rmtree(workdir)
        workdir.mkdir(parents=True)
        workdir.chmod(0o700)
        LOGGER.debug("Work directory %s created", workdir)
        return workdir

    def discard(self, workdir: Path, keep: bool = False) -> None:
        """Remove the run's work directory, unless it is kept for inspection."""
        if keep:
            LOGGER.info("Keeping work directory %s", workdir)
            return
        shutil.rmtree(workdir, ignore_errors=True)
        LOGGER.debug("Work directory %s removed", workdir)
