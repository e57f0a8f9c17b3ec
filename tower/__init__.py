"""Tower: development-loop supervisor.

Builds an app from its entry point, runs it, waits until it accepts
connections and keeps it under operator control:
  - Return:  rebuild and restart
  - ^C:      stop and exit

Run with:
    python -m tower MAIN_FILE --port 8080
"""

from tower.errors import (
    ArtifactMissing,
    BuildFailure,
    RunFailure,
    RunTimeout,
    TowerError,
)
from tower.supervisor import AppState, SupervisedApp

__all__ = [
    "AppState",
    "ArtifactMissing",
    "BuildFailure",
    "RunFailure",
    "RunTimeout",
    "SupervisedApp",
    "TowerError",
]
