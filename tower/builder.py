"""Compiles the entry point into the artifact the supervisor runs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TextIO

from .config import DEFAULT_BUILD_COMMAND

log = logging.getLogger(__name__)

# Emitted by `go build` ahead of diagnostics for a single-file package
TOOLCHAIN_PREAMBLE = "# command-line-arguments\n"

BUILD_ERROR_BANNER = "----------- Build Error -----------\n"
BUILD_ERROR_FOOTER = "-----------------------------------\n"

# (combined output, exit code) -> True if the build failed
BuildClassifier = Callable[[str, int], bool]


def output_is_failure(output: str, returncode: int) -> bool:
    """Any diagnostic output at all means the build failed.

    The exit code is ignored: some toolchains print errors and still exit 0.
    """
    return len(output) > 0


@dataclass
class BuildResult:
    ok: bool
    output: str = ""


class Builder:
    def __init__(
        self,
        main_file: str,
        output: str,
        console: TextIO,
        command: Sequence[str] = DEFAULT_BUILD_COMMAND,
        classifier: BuildClassifier = output_is_failure,
        preamble: str = TOOLCHAIN_PREAMBLE,
    ) -> None:
        self.main_file = main_file
        self.output = output
        self.console = console
        self.command = tuple(command)
        self.classifier = classifier
        self.preamble = preamble

    def argv(self) -> list[str]:
        """Expand ``{output}`` and ``{main}`` placeholders in the command."""
        return [
            part.format(output=self.output, main=self.main_file)
            for part in self.command
        ]

    async def build(self) -> BuildResult:
        argv = self.argv()
        log.debug("Build command: %s", argv)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            raw, _ = await process.communicate()
        except OSError as exc:
            # Compiler missing or not executable
            return self._fail(f"{exc}\n")

        output = raw.decode("utf-8", errors="replace")
        if self.classifier(output, process.returncode):
            return self._fail(output.replace(self.preamble, "", 1))

        return BuildResult(ok=True)

    def _fail(self, message: str) -> BuildResult:
        self.console.write(f"{BUILD_ERROR_BANNER}{message}{BUILD_ERROR_FOOTER}")
        self.console.flush()
        return BuildResult(ok=False, output=message)
