"""Build, run and babysit an app during development.

Usage:
    python -m tower MAIN_FILE [--port PORT] [--control-port PORT] ...

Press Return to rebuild and restart the app, ^C to stop it and exit.
Settings may also come from TOWER_* environment variables or a .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import shlex
import sys
from pathlib import Path

import uvicorn

from tower.config import Config
from tower.errors import TowerError
from tower.server import create_server
from tower.supervisor import SupervisedApp

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tower", description="Development-loop build-and-run supervisor",
    )
    parser.add_argument(
        "main_file", nargs="?",
        help="Entry-point source file to build (default: $TOWER_MAIN_FILE)",
    )
    parser.add_argument("--port", type=int, help="Port the app listens on")
    parser.add_argument("--name", help="Display name (default: current directory name)")
    parser.add_argument(
        "--build-cmd",
        help="Build command; {output} and {main} are substituted "
             "(default: 'go build -o {output} {main}')",
    )
    parser.add_argument(
        "--ready-timeout", type=float,
        help="Seconds to wait for the app to accept connections",
    )
    parser.add_argument(
        "--control-port", type=int,
        help="Serve MCP control tools on this port",
    )
    parser.add_argument(
        "--no-build", action="store_true",
        help="Run the existing artifact instead of building first",
    )
    parser.add_argument(
        "--keep-on-timeout", action="store_true",
        help="Leave an unready app running instead of killing it",
    )
    parser.add_argument("--env-file", type=Path, help="Load settings from this .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def load_config(args: argparse.Namespace) -> Config:
    """Environment first, then command-line overrides."""
    config = Config.from_env(args.env_file)

    overrides: dict = {}
    if args.main_file:
        overrides["main_file"] = args.main_file
    if args.port is not None:
        overrides["port"] = args.port
    if args.name:
        overrides["name"] = args.name
    if args.build_cmd:
        overrides["build_command"] = tuple(shlex.split(args.build_cmd))
    if args.ready_timeout is not None:
        overrides["ready_timeout"] = args.ready_timeout
    if args.control_port is not None:
        overrides["control_port"] = args.control_port
    if args.keep_on_timeout:
        overrides["kill_on_timeout"] = False

    return dataclasses.replace(config, **overrides)


async def serve(app: SupervisedApp, build: bool = True, control_port: int | None = None) -> int:
    """Start ``app`` and keep it under operator control until interrupted.

    Returns the exit code chosen by the termination watcher.
    """
    uvi: uvicorn.Server | None = None
    serve_task: asyncio.Task[None] | None = None
    if control_port is not None:
        server = create_server(app, port=control_port)
        uvi = uvicorn.Server(uvicorn.Config(
            server.streamable_http_app(),
            host="127.0.0.1", port=control_port, log_level="warning",
        ))
        # _serve() skips uvicorn's own signal capture so ^C reaches the listener
        serve_task = asyncio.create_task(uvi._serve())
        log.info("Control tools on http://127.0.0.1:%d/mcp", control_port)

    try:
        try:
            await app.start(build=build)
        except TowerError as exc:
            log.error("Initial start of %s failed: %s", app.name, exc)
        # Listen even after a failed start, so the operator can fix the code
        # and press Return. No-op when start() already installed it.
        app.listener.install()

        code = await app.listener.wait()
    finally:
        app.listener.close()
        app.shutdown()
        if uvi is not None and serve_task is not None:
            uvi.should_exit = True
            await serve_task

    return code or 0


class _SuppressDisconnect(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.exc_info and record.exc_info[1] is not None:
            if "ClosedResourceError" in str(record.exc_info[1]) or \
                    type(record.exc_info[1]).__name__ == "ClosedResourceError":
                record.levelno = logging.DEBUG
                record.levelname = "DEBUG"
                record.msg = "Client disconnected before response completed"
                record.args = None
                record.exc_info = None
                record.exc_text = None
        return True


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [tower] %(levelname)s %(message)s",
    )

    try:
        config = load_config(args)
        config.resolve_main_file()
    except ValueError as exc:
        log.error("%s", exc)
        sys.exit(2)

    # The MCP SDK logs a full traceback when an HTTP client disconnects
    # before its response is sent (ClosedResourceError); downgrade to DEBUG.
    logging.getLogger("mcp.server.streamable_http_manager").addFilter(
        _SuppressDisconnect()
    )

    app = SupervisedApp.from_config(config)
    code = asyncio.run(serve(
        app, build=not args.no_build, control_port=config.control_port,
    ))
    sys.exit(code)


if __name__ == "__main__":
    main()
