"""Map repository events to the stages they are allowed to run."""
from __future__ import annotations

from typing import List

from .models import EventType, RepositoryEvent

TEST_STAGE = "test"
BUILD_STAGE = "build"
PUSH_STAGE = "push"
DEPLOY_STAGE = "deploy"

RELEASE_STAGES = (BUILD_STAGE, PUSH_STAGE, DEPLOY_STAGE)


def authorizes_release(event: RepositoryEvent, release_branch: str) -> bool:
    """True only for a push to the release branch."""

    return event.type is EventType.PUSH and event.branch == release_branch


def eligible_stages(event: RepositoryEvent, release_branch: str) -> List[str]:
    """Return the ordered stage names the event may run. `test` is always eligible."""

    stages = [TEST_STAGE]
    if authorizes_release(event, release_branch):
        stages.extend(RELEASE_STAGES)
    return stages
