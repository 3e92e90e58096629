from typing import List, Optional

from ..registry import RegistryFactory
from .base import StageContext, StageHandler, StageResult
from .deployment import DeploymentTrigger
from .image_builder import ImageBuilder
from .publisher import Publisher
from .test_gate import TestGate


def build_pipeline_stages(registry_factory: Optional[RegistryFactory] = None) -> List[StageHandler]:
    """Factory returning the test -> build -> push -> deploy stages."""
    return [
        TestGate(),
        ImageBuilder(),
        Publisher(registry_factory=registry_factory),
        DeploymentTrigger(),
    ]


__all__ = [
    "DeploymentTrigger",
    "ImageBuilder",
    "Publisher",
    "StageContext",
    "StageHandler",
    "StageResult",
    "TestGate",
    "build_pipeline_stages",
]
