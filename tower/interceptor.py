"""Routes the child's stderr to the console, catching application panics."""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import Callable
from typing import Protocol, TextIO

from .config import HTTP_PANIC_MESSAGE

log = logging.getLogger(__name__)

APP_ERROR_BANNER = "----------- Application Error -----------\n"
APP_ERROR_FOOTER = "-----------------------------------------\n"

# chunk -> True if it carries an application failure
PanicDetector = Callable[[str], bool]


def contains_signature(signature: str = HTTP_PANIC_MESSAGE) -> PanicDetector:
    def detect(chunk: str) -> bool:
        return signature in chunk

    return detect


class ErrorOwner(Protocol):
    last_error: str


class OutputInterceptor:
    """Write sink attached to the child's error stream.

    Chunks matching the detector are stored as the owner's ``last_error``
    and framed with an "Application Error" banner; everything else is
    passed through untouched. Console write errors propagate.
    """

    def __init__(
        self,
        owner: ErrorOwner,
        console: TextIO,
        detector: PanicDetector | None = None,
    ) -> None:
        self.owner = owner
        self.console = console
        self.detector = detector or contains_signature()

    def write(self, chunk: str) -> int:
        if self.detector(chunk):
            self.owner.last_error = chunk
            log.debug("Application panic captured (%d chars)", len(chunk))
            self.console.write(APP_ERROR_BANNER)
            n = self.console.write(chunk)
            self.console.write(APP_ERROR_FOOTER)
        else:
            n = self.console.write(chunk)
        self.console.flush()
        return n


async def pump(stream: asyncio.StreamReader, sink: OutputInterceptor) -> None:
    """Feed an async stream into ``sink`` chunk by chunk until EOF.

    Decoding is incremental, so a character split across two reads
    arrives whole.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    sink.write(tail)
                break
            text = decoder.decode(chunk)
            if text:
                sink.write(text)
    except asyncio.CancelledError:
        pass
