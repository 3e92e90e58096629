"""
Per-stage credential objects.

Secrets are read from the environment only at the moment a stage that needs them
is about to start, and are wiped when that stage finishes. Nothing here writes a
secret to disk or to a command line.
"""
from __future__ import annotations

import abc
import logging
from contextlib import contextmanager
from enum import Enum
from typing import Iterator, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config import PipelineConfig
from .errors import CredentialFailure


LOGGER = logging.getLogger("shipyard.credentials")


class CredentialKind(str, Enum):
    REGISTRY = "registry"
    DEPLOY = "deploy"


class RegistryCredential(BaseModel):
    """Registry login secret. Piped to `docker login --password-stdin`."""

    kind: CredentialKind = CredentialKind.REGISTRY
    registry: str
    username: str
    token: SecretStr
    discarded: bool = False

    def discard(self) -> None:
        self.token = SecretStr("")
        self.discarded = True


class DeployCredential(BaseModel):
    """Deploy host descriptor plus the private key used to reach it."""

    kind: CredentialKind = CredentialKind.DEPLOY
    host: str
    username: str
    key: SecretStr
    port: int = 22
    discarded: bool = False

    @property
    def destination(self) -> str:
        return f"{self.username}@{self.host}"

    def discard(self) -> None:
        self.key = SecretStr("")
        self.discarded = True


Credential = Union[RegistryCredential, DeployCredential]


class RegistrySecrets(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    token: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("SHIPYARD_REGISTRY_TOKEN", "GHCR_PAT"),
    )
    username: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SHIPYARD_REGISTRY_USERNAME"),
    )


class DeploySecrets(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    host: Optional[str] = Field(default=None, validation_alias=AliasChoices("DEPLOY_HOST"))
    username: Optional[str] = Field(default=None, validation_alias=AliasChoices("DEPLOY_USERNAME"))
    key: Optional[SecretStr] = Field(default=None, validation_alias=AliasChoices("DEPLOY_KEY"))
    port: int = Field(default=22, validation_alias=AliasChoices("DEPLOY_PORT"))


class CredentialProvider(abc.ABC):
    """Source of credentials, consulted once per stage that declares a need."""

    @abc.abstractmethod
    def load(self, kind: CredentialKind, stage: str, config: PipelineConfig) -> Credential:
        """Construct a fresh credential or raise CredentialFailure."""


class EnvironmentCredentialProvider(CredentialProvider):
    """Reads secrets from process environment variables at load time."""

    def load(self, kind: CredentialKind, stage: str, config: PipelineConfig) -> Credential:
        try:
            if kind is CredentialKind.REGISTRY:
                return self._load_registry(stage, config)
            return self._load_deploy(stage)
        except ValidationError as exc:
            fields = ", ".join(str(error["loc"][0]) for error in exc.errors() if error.get("loc"))
            raise CredentialFailure(stage, f"invalid {kind.value} credential fields: {fields}") from None

    def _load_registry(self, stage: str, config: PipelineConfig) -> RegistryCredential:
        secrets = RegistrySecrets()
        username = secrets.username or config.image.owner
        if secrets.token is None or not secrets.token.get_secret_value():
            raise CredentialFailure(stage, "registry token is not set")
        if not username:
            raise CredentialFailure(stage, "registry username is not set")
        return RegistryCredential(registry=config.image.registry, username=username, token=secrets.token)

    def _load_deploy(self, stage: str) -> DeployCredential:
        secrets = DeploySecrets()
        missing = [
            name
            for name, value in (("DEPLOY_HOST", secrets.host), ("DEPLOY_USERNAME", secrets.username))
            if not value
        ]
        if secrets.key is None or not secrets.key.get_secret_value():
            missing.append("DEPLOY_KEY")
        if missing:
            raise CredentialFailure(stage, f"deploy credential incomplete, missing {', '.join(missing)}")
        return DeployCredential(
            host=secrets.host,
            username=secrets.username,
            key=secrets.key,
            port=secrets.port,
        )


@contextmanager
def scoped_credential(
    provider: CredentialProvider,
    kind: CredentialKind,
    stage: str,
    config: PipelineConfig,
) -> Iterator[Credential]:
    """Load a credential for exactly one stage and wipe it afterwards."""

    credential = provider.load(kind, stage, config)
    LOGGER.debug("Loaded %s credential for stage %s", kind.value, stage)
    try:
        yield credential
    finally:
        credential.discard()
        LOGGER.debug("Discarded %s credential for stage %s", kind.value, stage)
