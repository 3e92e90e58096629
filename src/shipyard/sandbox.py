from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from shutil import which
from typing import Iterable, List, Mapping, Optional

from .config import SandboxPolicy


LOGGER = logging.getLogger("shipyard.sandbox")


@dataclass
class CommandResult:
    command: List[str]
    cwd: Path
    return_code: int
    stdout: str
    stderr: str
    skipped: bool = False
    log_path: Optional[Path] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.return_code == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class CommandRunner:
    """
    Command runner with dry-run support used by every pipeline stage.

    Commands execute inside the run's work directory and each one gets its own
    log file under `logs/`. Anything passed through `input_text` (registry
    passwords) is written to the process stdin only and never logged.
    """

    def __init__(self, run_dir: Path, dry_run: bool = False, policy: Optional[SandboxPolicy] = None) -> None:
        self._run_dir = Path(run_dir)
        self._dry_run = dry_run
        self._policy = policy or SandboxPolicy()
        self._logs_dir = self._run_dir / "logs"
        self._logs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def run(
        self,
        command: Iterable[str],
        cwd: Optional[Path] = None,
        input_text: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        command_list = list(command)
        cwd = Path(cwd) if cwd is not None else self._run_dir
        log_path = self._create_log_path(command_list)
        display = " ".join(command_list)

        skip_reason = self._skip_reason(command_list)
        if skip_reason:
            LOGGER.warning("Command blocked (%s): %s", skip_reason, display)
            log_path.write_text(
                f"[skipped:{skip_reason}] command not executed: {display}\n",
                encoding="utf-8",
            )
            return CommandResult(
                command=command_list,
                cwd=cwd,
                return_code=127 if skip_reason == "missing-executable" else 126,
                stdout="",
                stderr=f"command blocked: {skip_reason}",
                skipped=True,
                log_path=log_path,
                reason=skip_reason,
            )

        if self._dry_run:
            LOGGER.info("[dry-run] %s", display)
            log_path.write_text(f"[dry-run] command skipped: {display}\n", encoding="utf-8")
            return CommandResult(
                command=command_list,
                cwd=cwd,
                return_code=0,
                stdout="",
                stderr="",
                skipped=True,
                log_path=log_path,
                reason="dry-run",
            )

        merged_env = {
            key: value for key, value in os.environ.items() if key not in self._policy.scrubbed_env
        }
        if env:
            merged_env.update(env)

        LOGGER.debug("$ %s", display)
        try:
            completed = subprocess.run(
                command_list,
                cwd=cwd,
                input=input_text,
                env=merged_env,
                capture_output=True,
                text=True,
                check=False,
                timeout=self._policy.command_timeout,
            )
        except FileNotFoundError as exc:
            log_path.write_text(
                f"[missing-executable] command failed: {display}\n{exc}\n",
                encoding="utf-8",
            )
            return CommandResult(
                command=command_list,
                cwd=cwd,
                return_code=127,
                stdout="",
                stderr=str(exc),
                skipped=True,
                log_path=log_path,
                reason="missing-executable",
            )
        except subprocess.TimeoutExpired as exc:
            log_path.write_text(
                f"[timeout] command exceeded {exc.timeout}s: {display}\n",
                encoding="utf-8",
            )
            return CommandResult(
                command=command_list,
                cwd=cwd,
                return_code=124,
                stdout="",
                stderr=f"timed out after {exc.timeout}s",
                skipped=False,
                log_path=log_path,
                reason="timeout",
            )
        except OSError as exc:
            log_path.write_text(
                f"[os-error] command failed: {display}\n{exc}\n",
                encoding="utf-8",
            )
            return CommandResult(
                command=command_list,
                cwd=cwd,
                return_code=getattr(exc, "errno", 1) or 1,
                stdout="",
                stderr=str(exc),
                skipped=False,
                log_path=log_path,
                reason="os-error",
            )
        log_path.write_text(
            f"$ {display}\n\nSTDOUT:\n{completed.stdout}\n\nSTDERR:\n{completed.stderr}",
            encoding="utf-8",
        )
        return CommandResult(
            command=command_list,
            cwd=cwd,
            return_code=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
            skipped=False,
            log_path=log_path,
            reason=None,
        )

    def _skip_reason(self, command: List[str]) -> Optional[str]:
        if not command:
            return "empty-command"
        executable = command[0]
        if executable not in self._policy.allowed_executables:
            return "blocked-executable"
        if not self._dry_run and which(executable) is None:
            return "missing-executable"
        return None

    def _create_log_path(self, command: List[str]) -> Path:
        safe = "-".join(part.replace("/", "_").replace(" ", "_") for part in command[:3] if part)
        if len(safe) > 60:
            safe = safe[:57] + "..."
        index = len(list(self._logs_dir.glob("*.log"))) + 1
        return self._logs_dir / f"{index:02d}-{safe}.log"
