import asyncio
import os
import socket
import time

import pytest

from tower.errors import ArtifactMissing, BuildFailure, RunFailure, RunTimeout
from tower.supervisor import AppState, SupervisedApp, default_artifact_path

from .conftest import (
    FAILING_BUILD,
    PANIC_TEXT,
    exiter_source,
    panic_source,
    server_source,
    sleeper_source,
)


def _connect(port: int) -> None:
    with socket.create_connection(("127.0.0.1", port), timeout=1):
        pass


async def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def test_default_artifact_path_is_unique_per_instance(tmp_path):
    a = SupervisedApp(str(tmp_path / "main.go"), 8080, "x", watch_controls=False)
    b = SupervisedApp(str(tmp_path / "main.go"), 8080, "x", watch_controls=False)
    assert a.artifact != b.artifact
    assert os.path.basename(default_artifact_path()).startswith("tower-app-")
    assert a.root == str(tmp_path)


async def test_new_app_is_idle(make_app, free_port):
    app = make_app(server_source(free_port))
    assert app.state is AppState.IDLE
    assert not app.is_running
    assert not app.is_exited
    assert app.last_error == ""


async def test_start_serves_before_returning(make_app, free_port, console):
    app = make_app(server_source(free_port))

    await app.start(build=True)

    assert app.is_running
    assert app.state is AppState.RUNNING
    assert os.path.exists(app.artifact)
    _connect(free_port)
    out = console.getvalue()
    assert "== Building demo" in out
    assert "== Running demo" in out


async def test_build_failure_does_not_run(make_app, free_port, console):
    app = make_app(server_source(free_port), build_command=FAILING_BUILD)

    with pytest.raises(BuildFailure) as excinfo:
        await app.start(build=True)

    assert excinfo.value.output == "./main.go:3:2: undefined: x\n"
    assert not app.is_running
    assert app.child is None
    out = console.getvalue()
    assert "----------- Build Error -----------" in out
    assert "== Fail to build demo" in out
    assert "== Running demo" not in out


async def test_build_failure_never_runs_stale_artifact(make_app, free_port, tmp_path):
    app = make_app(server_source(free_port), build_command=FAILING_BUILD)
    stale = tmp_path / "app-bin"
    stale.write_text(server_source(free_port))
    stale.chmod(0o755)

    with pytest.raises(BuildFailure):
        await app.start(build=True)

    assert not app.is_running


async def test_start_without_build_needs_artifact(make_app, free_port, console):
    app = make_app(server_source(free_port))

    with pytest.raises(ArtifactMissing):
        await app.start(build=False)

    assert not app.is_running
    assert "== Running demo" not in console.getvalue()


async def test_start_without_build_reuses_artifact(make_app, free_port, console):
    app = make_app(server_source(free_port))
    assert (await app.builder.build()).ok

    await app.start(build=False)

    assert app.is_running
    assert "== Building demo" not in console.getvalue()


async def test_stop_is_idempotent(make_app, free_port, console):
    app = make_app(server_source(free_port))
    await app.start()
    pid = app.child.pid

    app.stop()
    app.stop()

    assert console.getvalue().count("== Stopping demo") == 1
    assert app.state is AppState.IDLE
    assert not os.path.exists(app.artifact)
    assert await _wait_for(lambda: not _pid_alive(pid))


async def test_stop_when_never_started_is_noop(make_app, free_port, console):
    app = make_app(server_source(free_port))
    app.stop()
    assert console.getvalue() == ""


async def test_panic_is_recorded_and_app_keeps_running(make_app, free_port, console):
    app = make_app(panic_source(free_port))

    await app.start()

    assert await _wait_for(lambda: app.last_error == PANIC_TEXT)
    assert app.is_running
    out = console.getvalue()
    assert "----------- Application Error -----------" in out
    assert PANIC_TEXT in out


async def test_last_error_survives_restart(make_app, free_port):
    app = make_app(server_source(free_port))
    await app.start()
    app.last_error = "earlier failure"

    await app.restart()

    assert app.last_error == "earlier failure"


async def test_restart_replaces_child(make_app, free_port):
    app = make_app(server_source(free_port))
    await app.start()
    old = app.child

    await app.restart()

    assert app.child is not old
    assert app.child.pid != old.pid
    assert app.is_running
    _connect(free_port)
    assert await _wait_for(lambda: not _pid_alive(old.pid))


async def test_restart_rearms_after_failure(make_app, free_port, console):
    app = make_app(server_source(free_port), build_command=FAILING_BUILD)

    with pytest.raises(BuildFailure):
        await app.restart()
    with pytest.raises(BuildFailure):
        await app.restart()

    assert console.getvalue().count("== Building demo") == 2


async def test_concurrent_starts_share_one_run(make_app, free_port, console):
    app = make_app(server_source(free_port))

    await asyncio.gather(app.start(), app.start(), app.start())

    assert app._start_gate.runs == 1
    assert console.getvalue().count("== Building demo") == 1
    assert console.getvalue().count("== Running demo") == 1
    assert app.is_running


async def test_concurrent_start_failures_share_error(make_app, free_port):
    app = make_app(server_source(free_port), build_command=FAILING_BUILD)

    results = await asyncio.gather(
        app.start(), app.start(), return_exceptions=True,
    )

    assert all(isinstance(r, BuildFailure) for r in results)
    assert app._start_gate.runs == 1


async def test_start_gate_rearms_after_success(make_app, free_port, console):
    app = make_app(server_source(free_port))
    await app.start()
    app.stop()

    await app.start()

    assert app._start_gate.runs == 2
    assert app.is_running


async def test_readiness_timeout_kills_child(make_app, free_port):
    app = make_app(sleeper_source(), ready_timeout=0.5)

    with pytest.raises(RunTimeout):
        await app.start()

    assert not app.is_running
    assert app.child is None
    # Only the process is discarded; the artifact stays for a retry
    assert os.path.exists(app.artifact)


async def test_readiness_timeout_can_leave_child_running(make_app, free_port):
    # Opt-out keeps the unready process around until an explicit stop
    app = make_app(sleeper_source(), ready_timeout=0.5, kill_on_timeout=False)

    with pytest.raises(RunTimeout):
        await app.start()

    assert app.is_running
    app.stop()
    assert not app.is_running


async def test_child_exiting_before_ready_fails_fast(make_app, free_port, console):
    app = make_app(exiter_source(), ready_timeout=30)

    started = time.monotonic()
    with pytest.raises(RunFailure) as excinfo:
        await app.start()

    assert not isinstance(excinfo.value, RunTimeout)
    assert "exited with code 3" in str(excinfo.value)
    assert time.monotonic() - started < 10
    assert "== Fail to run demo" in console.getvalue()


async def test_exited_state(make_app, free_port):
    app = make_app(server_source(free_port))
    await app.start()

    app.child.kill()
    assert await _wait_for(lambda: app.is_exited)

    assert app.state is AppState.EXITED
    assert not app.is_running
    assert app.status()["exit_code"] is not None


async def test_successful_start_installs_controls_once(make_app, free_port, monkeypatch):
    app = make_app(server_source(free_port), watch_controls=True)
    calls = []
    monkeypatch.setattr(app.listener, "install", lambda: calls.append(1))

    await app.start()
    await app.restart()

    assert len(calls) == 2  # install() itself guards against re-registration


async def test_status_reports_state(make_app, free_port):
    app = make_app(server_source(free_port))
    await app.start()

    status = app.status()

    assert status["name"] == "demo"
    assert status["state"] == "running"
    assert status["pid"] == app.child.pid
    assert status["port"] == free_port
    assert status["last_error"] == ""


async def test_shutdown_removes_artifact_after_readiness_timeout(make_app, free_port):
    app = make_app(sleeper_source(), ready_timeout=0.5)
    with pytest.raises(RunTimeout):
        await app.start()

    app.stop()
    assert os.path.exists(app.artifact)  # stop() only acts on a running child

    app.shutdown()
    assert not os.path.exists(app.artifact)


async def test_shutdown_removes_artifact_after_early_exit(make_app, free_port):
    app = make_app(exiter_source())
    with pytest.raises(RunFailure):
        await app.start()

    app.shutdown()

    assert not os.path.exists(app.artifact)


async def test_shutdown_stops_running_app(make_app, free_port, console):
    app = make_app(server_source(free_port))
    await app.start()

    app.shutdown()
    app.shutdown()

    assert not app.is_running
    assert not os.path.exists(app.artifact)
    assert console.getvalue().count("== Stopping demo") == 1


async def test_exited_child_is_not_signalled_again(make_app, free_port, monkeypatch):
    app = make_app(exiter_source())
    killed = []
    monkeypatch.setattr(os, "killpg", lambda pid, sig: killed.append(pid))

    with pytest.raises(RunFailure):
        await app.start()

    assert app.child is None
    assert killed == []
