"""
shipyard - gated continuous-delivery runs for a containerised service.

On each repository event the pipeline tests the service in a disposable build,
packages it as a versioned image, publishes it, and triggers a remote deploy.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("shipyard")
except PackageNotFoundError:  # pragma: no cover - fallback for source checkouts
    __version__ = "0.0.0"

__all__ = ["__version__"]
