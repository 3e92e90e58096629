from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from ..credentials import Credential, CredentialKind, DeployCredential
from ..errors import CredentialFailure, NetworkFailure, StageFailure
from ..sandbox import CommandResult
from ..trigger import DEPLOY_STAGE, PUSH_STAGE
from .base import StageContext, StageHandler, StageResult


LOGGER = logging.getLogger("shipyard.stages.deploy")

SSH_FAILURE_CODE = 255
AUTH_MARKERS = ("permission denied", "authentication failed", "too many authentication failures")


class DeploymentTrigger(StageHandler):
    """
    Invoke the pre-provisioned deploy script on the deploy host.

    Fire-and-forget: the remote exit status is the whole contract. The script
    takes no arguments and resolves `latest` from the registry itself.
    """

    name = DEPLOY_STAGE
    needs = (PUSH_STAGE,)
    credential = CredentialKind.DEPLOY

    def execute(self, context: StageContext, credential: Optional[Credential]) -> StageResult:
        if not isinstance(credential, DeployCredential):
            raise StageFailure(self.name, "deployment requires a deploy credential")
        deploy = context.config.deploy

        with tempfile.TemporaryDirectory(dir=context.workdir, prefix="ssh-") as tmpdir:
            key_path = _write_private_key(Path(tmpdir) / "deploy_key", credential.key.get_secret_value())
            command = ssh_command(
                credential,
                key_path=key_path,
                known_hosts=Path(tmpdir) / "known_hosts",
                script=deploy.script,
                connect_timeout=deploy.connect_timeout,
            )
            LOGGER.info("Triggering %s on %s:%s", deploy.script, credential.host, credential.port)
            result = context.runner.run(command)

        _raise_for_result(self.name, result, credential)
        summary = "Deploy skipped (dry-run)." if result.skipped else f"Deploy script finished on {credential.host}."
        return StageResult(
            name=self.name,
            summary=summary,
            details={
                "host": credential.host,
                "port": credential.port,
                "script": deploy.script,
                "return_code": result.return_code,
            },
        )


def ssh_command(
    credential: DeployCredential,
    key_path: Path,
    known_hosts: Path,
    script: str,
    connect_timeout: int = 30,
) -> List[str]:
    return [
        "ssh",
        "-i",
        str(key_path),
        "-p",
        str(credential.port),
        "-o",
        "BatchMode=yes",
        "-o",
        "IdentitiesOnly=yes",
        "-o",
        "StrictHostKeyChecking=accept-new",
        "-o",
        f"UserKnownHostsFile={known_hosts}",
        "-o",
        f"ConnectTimeout={connect_timeout}",
        credential.destination,
        script,
    ]


def _write_private_key(path: Path, key: str) -> Path:
    if not key.endswith("\n"):
        key += "\n"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(key)
    return path


def _raise_for_result(stage: str, result: CommandResult, credential: DeployCredential) -> None:
    if result.ok:
        return
    if result.reason == "missing-executable":
        raise StageFailure(stage, "ssh is not available on this host")
    if result.return_code == SSH_FAILURE_CODE:
        output = result.output.lower()
        if any(marker in output for marker in AUTH_MARKERS):
            raise CredentialFailure(stage, f"{credential.destination} rejected the deploy key")
        raise NetworkFailure(stage, f"could not reach {credential.host}:{credential.port}")
    raise StageFailure(stage, f"deploy script exited with code {result.return_code}")
