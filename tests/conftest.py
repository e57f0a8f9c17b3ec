import asyncio
import io
import socket
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from tower.supervisor import SupervisedApp

PANIC_TEXT = "2024/01/01 12:00:00 http: panic serving 127.0.0.1:5555: boom\n"

# Stands in for a compiler: "builds" by copying the script to the artifact path
COPY_BUILD = (
    sys.executable,
    "-c",
    "import os, shutil, sys; shutil.copy(sys.argv[2], sys.argv[1]); os.chmod(sys.argv[1], 0o755)",
    "{output}",
    "{main}",
)

FAILING_BUILD = (
    sys.executable,
    "-c",
    "print('# command-line-arguments'); print('./main.go:3:2: undefined: x')",
)

# Python TCP server used as the supervised application. Binding retries so a
# restart doesn't trip over the previous instance still releasing the port.
_SERVER = """#!{python}
import socket, sys, time

sock = socket.socket()
sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
deadline = time.time() + 5
while True:
    try:
        sock.bind(("127.0.0.1", {port}))
        break
    except OSError:
        if time.time() > deadline:
            raise
        time.sleep(0.02)
sock.listen(16)
{after_listen}
while True:
    conn, _ = sock.accept()
    conn.close()
"""

_SLEEPER = """#!{python}
import time
time.sleep(60)
"""

_EXITER = """#!{python}
import sys
sys.exit(3)
"""


def server_source(port: int, after_listen: str = "") -> str:
    return _SERVER.format(python=sys.executable, port=port, after_listen=after_listen)


def panic_source(port: int) -> str:
    return server_source(
        port, f"sys.stderr.write({PANIC_TEXT!r}); sys.stderr.flush()",
    )


def sleeper_source() -> str:
    return _SLEEPER.format(python=sys.executable)


def exiter_source() -> str:
    return _EXITER.format(python=sys.executable)


@pytest.fixture
def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def console() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
async def make_app(tmp_path: Path, free_port: int, console: io.StringIO) -> Callable[..., SupervisedApp]:
    """Build SupervisedApp instances over a script written to tmp_path.

    Every app created is stopped at teardown.
    """
    apps: list[SupervisedApp] = []

    def factory(source: str, **kwargs) -> SupervisedApp:
        main = tmp_path / "main.py"
        main.write_text(source)
        kwargs.setdefault("artifact", str(tmp_path / "app-bin"))
        kwargs.setdefault("build_command", COPY_BUILD)
        kwargs.setdefault("ready_timeout", 10)
        kwargs.setdefault("console", console)
        kwargs.setdefault("watch_controls", False)
        app = SupervisedApp(str(main), free_port, "demo", **kwargs)
        apps.append(app)
        return app

    yield factory

    for app in apps:
        child = app.child
        app.stop()
        if child is not None:
            child.kill()
            await asyncio.wait(child._tasks, timeout=5)
