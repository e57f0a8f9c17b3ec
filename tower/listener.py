"""Operator controls: press Return to restart, ^C to stop and exit."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import threading
from collections.abc import Iterable
from typing import TYPE_CHECKING, TextIO

from .errors import TowerError

if TYPE_CHECKING:
    from .supervisor import SupervisedApp

log = logging.getLogger(__name__)

RESTART_LINE = "\n"
TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ControlListener:
    """Two long-lived watchers that drive the app's lifecycle.

    The restart watcher consumes operator input lines and restarts the app
    on every empty line. The termination watcher waits for an interrupt,
    stops the app and resolves ``wait()`` with exit code 0.

    Input is read on a daemon thread and handed to the event loop
    through a queue.
    """

    def __init__(
        self,
        app: SupervisedApp,
        stdin: TextIO | None = None,
        signals: Iterable[signal.Signals] = TERMINATION_SIGNALS,
    ) -> None:
        self.app = app
        self.stdin = stdin or sys.stdin
        self.signals = tuple(signals)
        self.exit_code: int | None = None
        self.input_closed = asyncio.Event()
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        self._interrupted = asyncio.Event()
        self._closed = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: list[asyncio.Task[None]] = []

    def install(self) -> None:
        """Start both watchers. Only the first call per app has any effect."""
        if self.app.controls_installed:
            return
        self.app.controls_installed = True

        loop = self._loop = asyncio.get_running_loop()
        for sig in self.signals:
            loop.add_signal_handler(sig, self.interrupt)

        threading.Thread(
            target=self._read_input, args=(loop,),
            name=f"{self.app.name}-stdin", daemon=True,
        ).start()

        self._tasks = [
            asyncio.create_task(self._watch_restart(), name=f"{self.app.name}-restart"),
            asyncio.create_task(self._watch_termination(), name=f"{self.app.name}-signal"),
        ]

    def interrupt(self) -> None:
        self._interrupted.set()

    async def wait(self) -> int | None:
        """Block until the termination watcher has stopped the app."""
        await self._closed.wait()
        return self.exit_code

    def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._loop is not None:
            for sig in self.signals:
                self._loop.remove_signal_handler(sig)
            self._loop = None

    # ------------------------------------------------------------------
    # Watchers
    # ------------------------------------------------------------------

    async def _watch_restart(self) -> None:
        while True:
            line = await self._lines.get()
            if line is None:
                log.debug("Operator input closed; restart-on-return disabled")
                self.input_closed.set()
                return
            if line != RESTART_LINE:
                continue
            try:
                await self.app.restart()
            except TowerError as exc:
                # Already reported on the console by the app
                log.debug("Restart of %s failed: %s", self.app.name, exc)

    async def _watch_termination(self) -> None:
        await self._interrupted.wait()
        self.app.console.write("\n")
        self.app.console.flush()
        self.app.shutdown()
        self.exit_code = 0
        self._closed.set()

    def _read_input(self, loop: asyncio.AbstractEventLoop) -> None:
        try:
            for line in iter(self.stdin.readline, ""):
                if not self._post(loop, line):
                    return
        except (OSError, ValueError):
            log.debug("Operator input unreadable", exc_info=True)
        self._post(loop, None)

    def _post(self, loop: asyncio.AbstractEventLoop, line: str | None) -> bool:
        try:
            loop.call_soon_threadsafe(self._lines.put_nowait, line)
        except RuntimeError:
            # Loop already closed during shutdown
            return False
        return True
