"""Process Supervisor — builds, runs, restarts and stops the supervised app."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import secrets
import signal
import sys
import tempfile
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, TextIO

from .builder import Builder, BuildClassifier, output_is_failure
from .config import DEFAULT_BUILD_COMMAND, DEFAULT_READY_TIMEOUT, Config
from .errors import ArtifactMissing, BuildFailure, RunFailure, RunTimeout, TowerError
from .gate import SingleFlight
from .interceptor import OutputInterceptor, PanicDetector, contains_signature, pump
from .listener import ControlListener
from .probe import dial_until_ready

log = logging.getLogger(__name__)

PROBE_HOST = "127.0.0.1"


class AppState(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    RUNNING = "running"
    EXITED = "exited"


def default_artifact_path() -> str:
    """Temp path unique to this supervisor instance."""
    stamp = int(time.time())
    return os.path.join(
        tempfile.gettempdir(), f"tower-app-{stamp}-{secrets.token_hex(4)}"
    )


@dataclass
class ChildProcess:
    """Handle on the running artifact and its background tasks."""

    process: asyncio.subprocess.Process
    start_time: float = field(default_factory=time.time)
    _tasks: list[asyncio.Task[None]] = field(default_factory=list, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exit_code(self) -> int | None:
        return self.process.returncode

    def kill(self) -> None:
        # The child leads its own session, so take down its whole group
        try:
            os.killpg(self.process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass


class SupervisedApp:
    """A single supervised application and its one child process.

    ``start`` and ``restart`` are each guarded by a single-flight gate, so
    overlapping calls share one execution. ``stop`` is synchronous and safe
    to call at any time.
    """

    def __init__(
        self,
        main_file: str,
        port: int,
        name: str | None = None,
        *,
        artifact: str | None = None,
        build_command: Sequence[str] = DEFAULT_BUILD_COMMAND,
        build_classifier: BuildClassifier = output_is_failure,
        panic_detector: PanicDetector | None = None,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        kill_on_timeout: bool = True,
        console: TextIO | None = None,
        stdin: TextIO | None = None,
        watch_controls: bool = True,
    ) -> None:
        self.main_file = main_file
        self.port = port
        self.name = name or Path.cwd().name
        self.root = str(Path(main_file).parent)
        self.artifact = artifact or default_artifact_path()
        self.ready_timeout = ready_timeout
        self.kill_on_timeout = kill_on_timeout
        self.console = console or sys.stdout
        self.last_error = ""

        # Set once the keypress/signal watchers have been started
        self.watch_controls = watch_controls
        self.controls_installed = False

        self.builder = Builder(
            main_file,
            self.artifact,
            self.console,
            command=build_command,
            classifier=build_classifier,
        )
        self.interceptor = OutputInterceptor(self, self.console, panic_detector)
        self.listener = ControlListener(self, stdin=stdin)

        self._child: ChildProcess | None = None
        self._building = False
        self._start_gate: SingleFlight[None] = SingleFlight()
        self._restart_gate: SingleFlight[None] = SingleFlight()

    @classmethod
    def from_config(cls, config: Config, **kwargs: Any) -> SupervisedApp:
        return cls(
            config.resolve_main_file(),
            config.port,
            config.name,
            build_command=config.build_command,
            panic_detector=contains_signature(config.panic_signature),
            ready_timeout=config.ready_timeout,
            kill_on_timeout=config.kill_on_timeout,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def child(self) -> ChildProcess | None:
        return self._child

    @property
    def is_running(self) -> bool:
        return self._child is not None and self._child.exit_code is None

    @property
    def is_exited(self) -> bool:
        return self._child is not None and self._child.exit_code is not None

    @property
    def state(self) -> AppState:
        if self._building:
            return AppState.BUILDING
        if self._child is None:
            return AppState.IDLE
        return AppState.EXITED if self.is_exited else AppState.RUNNING

    def status(self) -> dict[str, Any]:
        child = self._child
        return {
            "name": self.name,
            "state": self.state.value,
            "pid": child.pid if child else None,
            "exit_code": child.exit_code if child else None,
            "port": self.port,
            "artifact": self.artifact,
            "last_error": self.last_error,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, build: bool = True) -> None:
        """Build (optionally) and run the app, returning once it is serving.

        Raises BuildFailure, ArtifactMissing, RunFailure or RunTimeout.
        """
        await self._start_gate.do(lambda: self._start(build))

    async def restart(self) -> None:
        async def sequence() -> None:
            self.stop()
            await self.start(build=True)

        await self._restart_gate.do(sequence)

    def stop(self) -> None:
        if not self.is_running:
            return

        with contextlib.suppress(OSError):
            os.remove(self.artifact)
        self._say(f"== Stopping {self.name}")
        self._discard_child()

    def shutdown(self) -> None:
        """Stop the app for good and remove its artifact.

        Unlike stop(), the artifact is deleted even when no child is running,
        e.g. after a readiness timeout already discarded it.
        """
        self.stop()
        with contextlib.suppress(OSError):
            os.remove(self.artifact)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _start(self, build: bool) -> None:
        if build:
            self._building = True
            try:
                self._say(f"== Building {self.name}")
                result = await self.builder.build()
            finally:
                self._building = False
            if not result.ok:
                self._say(f"== Fail to build {self.name}")
                raise BuildFailure(result.output)

        try:
            await self._run()
        except TowerError:
            self._say(f"== Fail to run {self.name}")
            raise

        log.info("%s serving on port %d (pid=%s)", self.name, self.port, self._child.pid)
        if self.watch_controls:
            self.listener.install()

    async def _run(self) -> None:
        if not os.path.exists(self.artifact):
            raise ArtifactMissing(self.artifact)

        self._say(f"== Running {self.name}")
        try:
            process = await asyncio.create_subprocess_exec(
                self.artifact,
                stdin=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                # Own session: ^C on the terminal reaches us, not the child
                start_new_session=True,
            )
        except OSError as exc:
            raise RunFailure(f"Failed to launch {self.artifact}: {exc}") from exc

        child = ChildProcess(process)
        waiter = asyncio.create_task(
            self._wait_for_exit(child), name=f"{self.name}-waiter",
        )
        child._tasks = [
            asyncio.create_task(
                pump(process.stderr, self.interceptor),  # type: ignore[arg-type]
                name=f"{self.name}-stderr",
            ),
            waiter,
        ]
        self._child = child

        probe = asyncio.create_task(
            dial_until_ready(PROBE_HOST, self.port, self.ready_timeout),
            name=f"{self.name}-probe",
        )
        done, _ = await asyncio.wait(
            {probe, waiter}, return_when=asyncio.FIRST_COMPLETED,
        )

        if probe in done:
            try:
                probe.result()
            except RunTimeout:
                self._abandon(child)
                raise
            return

        # Exited before it ever accepted a connection
        probe.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await probe
        self._abandon(child)
        raise RunFailure(
            f"{self.name} exited with code {child.exit_code} "
            f"before listening on port {self.port}"
        )

    def _abandon(self, child: ChildProcess) -> None:
        """Kill a child that never became ready, if configured to."""
        if not self.kill_on_timeout or self._child is not child:
            return
        log.warning("Killing unready %s (pid=%s)", self.name, child.pid)
        self._discard_child()

    def _discard_child(self) -> None:
        child, self._child = self._child, None
        # A reaped child's pid may already belong to another process
        if child is not None and child.exit_code is None:
            child.kill()

    def _say(self, line: str) -> None:
        self.console.write(line + "\n")
        self.console.flush()

    async def _wait_for_exit(self, child: ChildProcess) -> None:
        code = await child.process.wait()
        uptime = time.time() - child.start_time
        log.debug("%s (pid=%s) exited with code %s after %.1fs",
                  self.name, child.pid, code, uptime)
