"""Errors raised by the supervisor's lifecycle operations."""

from __future__ import annotations


class TowerError(Exception):
    """Base class for every supervisor failure."""


class BuildFailure(TowerError):
    """The build produced diagnostic output."""

    def __init__(self, output: str) -> None:
        super().__init__(output)
        self.output = output


class ArtifactMissing(TowerError):
    """Run was attempted without a built artifact on disk."""

    def __init__(self, path: str) -> None:
        super().__init__(f"No artifact at {path}")
        self.path = path


class RunFailure(TowerError):
    """The artifact could not be launched or never became ready."""


class RunTimeout(RunFailure):
    def __init__(self, address: str, timeout: float) -> None:
        super().__init__(f"{address} not ready after {timeout:g}s")
        self.address = address
        self.timeout = timeout
