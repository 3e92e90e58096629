"""Push the built image under its version tag and the floating latest tag."""
from __future__ import annotations

import logging
import re
import threading
from datetime import datetime, timezone
from typing import Optional, Tuple

from ..config import ImageConfig, LatestTagPolicy
from ..credentials import Credential, CredentialKind, RegistryCredential
from ..errors import ConfigurationError, NetworkFailure, StageFailure
from ..models import Artifact
from ..registry import DockerRegistry, Registry, RegistryFactory
from ..trigger import BUILD_STAGE, PUSH_STAGE
from .base import StageContext, StageHandler, StageResult


LOGGER = logging.getLogger("shipyard.stages.push")

TAG_PATTERN = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}")

# Serialises the read-compare-write on `latest` between runs inside one process only.
# Separate `shipyard run` processes are not coordinated; see LatestTagPolicy.
_LATEST_LOCK = threading.Lock()


def version_tag(commit: str, length: int = 7) -> str:
    """Immutable version tag: the first *length* characters of the commit identifier."""
    if length < 1:
        raise ConfigurationError("version tag length must be positive")
    tag = commit.strip()[:length]
    if not TAG_PATTERN.fullmatch(tag):
        raise ConfigurationError(f"commit {commit!r} does not yield a valid image tag")
    return tag


def image_references(image: ImageConfig, commit: str) -> Tuple[str, str]:
    """Return the `<repo>:<version>` and `<repo>:latest` references for *commit*."""
    repository = image.repository
    return (
        f"{repository}:{version_tag(commit, image.version_tag_length)}",
        f"{repository}:{image.latest_tag}",
    )


def _default_registry_factory(runner, config_dir) -> Registry:
    return DockerRegistry(runner, config_dir)


class Publisher(StageHandler):
    name = PUSH_STAGE
    needs = (BUILD_STAGE,)
    credential = CredentialKind.REGISTRY

    def __init__(self, registry_factory: Optional[RegistryFactory] = None) -> None:
        self._registry_factory = registry_factory or _default_registry_factory

    def execute(self, context: StageContext, credential: Optional[Credential]) -> StageResult:
        if not isinstance(credential, RegistryCredential):
            raise StageFailure(self.name, "publisher requires a registry credential")
        built = context.outputs[BUILD_STAGE].details
        local_ref = built["local_ref"]
        image = context.config.image
        try:
            version_ref, latest_ref = image_references(image, context.run.commit)
        except ConfigurationError as exc:
            raise StageFailure(self.name, str(exc)) from exc

        registry = self._registry_factory(context.runner, context.workdir / "registry-auth")
        try:
            registry.login(credential, self.name)
            digest = registry.publish(local_ref, version_ref, self.name)
            latest_updated = self._publish_latest(
                registry, image.latest_policy, local_ref, latest_ref, version_ref, built.get("commit_time")
            )
        finally:
            registry.logout(self.name)

        tags = [version_ref.rsplit(":", 1)[1]]
        if latest_updated:
            tags.append(image.latest_tag)
        artifact = Artifact(
            repository=image.repository,
            digest=digest,
            image_id=built.get("image_id"),
            commit=context.run.commit,
            tags=tags,
        )
        context.run.artifact = artifact
        summary = f"Pushed {version_ref}"
        summary += f" and {latest_ref}." if latest_updated else f"; {latest_ref} left on a newer commit."
        return StageResult(
            name=self.name,
            summary=summary,
            details={
                "version_ref": version_ref,
                "latest_ref": latest_ref,
                "latest_updated": latest_updated,
                "digest": digest,
                "latest_policy": image.latest_policy.value,
            },
        )

    def _publish_latest(
        self,
        registry: Registry,
        policy: LatestTagPolicy,
        local_ref: str,
        latest_ref: str,
        version_ref: str,
        commit_time: Optional[str],
    ) -> bool:
        try:
            if policy is LatestTagPolicy.LAST_WRITER_WINS:
                registry.publish(local_ref, latest_ref, self.name)
                return True
            with _LATEST_LOCK:
                current = registry.commit_time(latest_ref, self.name)
                if not is_newer_commit(commit_time, current):
                    LOGGER.info(
                        "Not moving %s: it already represents a commit from %s (this run: %s)",
                        latest_ref,
                        current,
                        commit_time,
                    )
                    return False
                registry.publish(local_ref, latest_ref, self.name)
                return True
        except NetworkFailure as exc:
            LOGGER.warning(
                "%s was pushed but %s was not; the two tags now point at different images",
                version_ref,
                latest_ref,
            )
            raise NetworkFailure(self.name, exc.cause, tags_desynchronized=True) from exc


def is_newer_commit(incoming: Optional[str], current: Optional[str]) -> bool:
    """
    Compare-and-swap rule for the newest-commit policy.

    An equal timestamp wins too, so re-running a commit keeps its version tag and
    `latest` on the same image. Without a timestamp on either side there is
    nothing to order by, so the incoming image wins.
    """
    if current is None:
        return True
    if incoming is None:
        LOGGER.warning("Run has no commit timestamp; repointing latest unconditionally")
        return True
    try:
        return _parse_time(incoming) >= _parse_time(current)
    except ValueError:
        LOGGER.warning("Unparseable commit timestamps %r / %r; repointing latest", incoming, current)
        return True


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
