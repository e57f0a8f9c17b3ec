from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_PORT = 8080
DEFAULT_READY_TIMEOUT = 60.0
DEFAULT_BUILD_COMMAND = ("go", "build", "-o", "{output}", "{main}")
HTTP_PANIC_MESSAGE = "http: panic serving"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _parse_number(name: str, raw: str, kind: type) -> int | float:
    try:
        return kind(raw)
    except ValueError:
        raise ValueError(f"{name} must be a {kind.__name__}, got {raw!r}") from None


@dataclass(frozen=True)
class Config:
    main_file: str = ""
    port: int = DEFAULT_PORT
    name: str = field(default_factory=lambda: Path.cwd().name)
    build_command: tuple[str, ...] = DEFAULT_BUILD_COMMAND
    ready_timeout: float = DEFAULT_READY_TIMEOUT
    control_port: int | None = None
    kill_on_timeout: bool = True
    panic_signature: str = HTTP_PANIC_MESSAGE

    def resolve_main_file(self) -> str:
        """Return the entry point as an absolute path.

        Raises ValueError if no entry point was configured or it does not exist.
        """
        if not self.main_file:
            raise ValueError("No entry point given (pass MAIN_FILE or set TOWER_MAIN_FILE)")

        resolved = Path(self.main_file).resolve()
        if not resolved.exists():
            raise ValueError(f"Entry point does not exist: {resolved}")

        return str(resolved)

    @classmethod
    def from_env(cls, env_path: str | Path | None = None) -> Config:
        load_dotenv(env_path)

        kwargs: dict = {}
        if main := os.getenv("TOWER_MAIN_FILE"):
            kwargs["main_file"] = main
        if port := os.getenv("TOWER_PORT"):
            kwargs["port"] = _parse_number("TOWER_PORT", port, int)
        if name := os.getenv("TOWER_NAME"):
            kwargs["name"] = name
        if build := os.getenv("TOWER_BUILD_CMD"):
            kwargs["build_command"] = tuple(shlex.split(build))
        if timeout := os.getenv("TOWER_READY_TIMEOUT"):
            kwargs["ready_timeout"] = _parse_number("TOWER_READY_TIMEOUT", timeout, float)
        if control := os.getenv("TOWER_CONTROL_PORT"):
            kwargs["control_port"] = _parse_number("TOWER_CONTROL_PORT", control, int)
        if kill := os.getenv("TOWER_KILL_ON_TIMEOUT"):
            kwargs["kill_on_timeout"] = _parse_bool("TOWER_KILL_ON_TIMEOUT", kill)
        if signature := os.getenv("TOWER_PANIC_SIGNATURE"):
            kwargs["panic_signature"] = signature

        return cls(**kwargs)
