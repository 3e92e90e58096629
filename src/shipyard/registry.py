from __future__ import annotations

import abc
import logging
import re
import shutil
from pathlib import Path
from typing import Callable, Dict, Optional

from .credentials import RegistryCredential
from .dockerfiles import COMMIT_TIME_LABEL
from .errors import CredentialFailure, NetworkFailure, StageFailure
from .sandbox import CommandResult, CommandRunner


LOGGER = logging.getLogger("shipyard.registry")

DIGEST_PATTERN = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")


class Registry(abc.ABC):
    """Operations the publisher needs from a container registry."""

    @abc.abstractmethod
    def login(self, credential: RegistryCredential, stage: str) -> None:
        """Authenticate or raise CredentialFailure."""

    @abc.abstractmethod
    def publish(self, local_ref: str, target_ref: str, stage: str) -> Optional[str]:
        """Point *target_ref* at *local_ref* and push it; return the pushed digest."""

    @abc.abstractmethod
    def commit_time(self, ref: str, stage: str) -> Optional[str]:
        """Return the commit timestamp recorded on the image behind *ref*, if any."""

    def logout(self, stage: str) -> None:
        return None


RegistryFactory = Callable[[CommandRunner, Path], Registry]


class DockerRegistry(Registry):
    """
    Registry driven through the docker CLI.

    Logins are written to a private DOCKER_CONFIG directory that lives only as long
    as the publishing stage, so the user's ~/.docker/config.json is never touched.
    """

    def __init__(self, runner: CommandRunner, config_dir: Path) -> None:
        self._runner = runner
        self._config_dir = Path(config_dir)
        self._registry: Optional[str] = None

    @property
    def _env(self) -> Dict[str, str]:
        return {"DOCKER_CONFIG": str(self._config_dir)}

    def login(self, credential: RegistryCredential, stage: str) -> None:
        self._config_dir.mkdir(parents=True, exist_ok=True)
        self._config_dir.chmod(0o700)
        LOGGER.info("Logging into %s as %s", credential.registry, credential.username)
        result = self._runner.run(
            ["docker", "login", credential.registry, "--username", credential.username, "--password-stdin"],
            input_text=credential.token.get_secret_value(),
            env=self._env,
        )
        if result.reason == "missing-executable":
            raise StageFailure(stage, "docker is not available on this host")
        if not result.ok:
            raise CredentialFailure(stage, f"login to {credential.registry} rejected: {_tail(result)}")
        self._registry = credential.registry

    def publish(self, local_ref: str, target_ref: str, stage: str) -> Optional[str]:
        tagged = self._runner.run(["docker", "tag", local_ref, target_ref], env=self._env)
        if not tagged.ok:
            raise NetworkFailure(stage, f"could not tag {local_ref} as {target_ref}: {_tail(tagged)}")
        LOGGER.info("Pushing %s", target_ref)
        pushed = self._runner.run(["docker", "push", target_ref], env=self._env)
        if not pushed.ok:
            raise NetworkFailure(stage, f"push of {target_ref} failed: {_tail(pushed)}")
        match = DIGEST_PATTERN.search(pushed.stdout)
        return match.group(1) if match else None

    def commit_time(self, ref: str, stage: str) -> Optional[str]:
        pulled = self._runner.run(["docker", "pull", "--quiet", ref], env=self._env)
        if not pulled.ok:
            LOGGER.info("No existing image at %s", ref)
            return None
        inspected = self._runner.run(
            [
                "docker",
                "image",
                "inspect",
                "--format",
                f'{{{{ index .Config.Labels "{COMMIT_TIME_LABEL}" }}}}',
                ref,
            ],
            env=self._env,
        )
        value = inspected.stdout.strip() if inspected.ok else ""
        if not value or value == "<no value>":
            return None
        return value

    def logout(self, stage: str) -> None:
        if self._registry:
            self._runner.run(["docker", "logout", self._registry], env=self._env)
            self._registry = None
        shutil.rmtree(self._config_dir, ignore_errors=True)


def _tail(result: CommandResult, limit: int = 400) -> str:
    text = result.output.strip() or f"exit code {result.return_code}"
    return text[-limit:]
