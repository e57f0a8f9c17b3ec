"""MCP server exposing the supervised app's lifecycle as tools over HTTP."""

from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from tower.errors import TowerError
from tower.supervisor import SupervisedApp

# Default port for the control endpoint
DEFAULT_CONTROL_PORT = 8902


def create_server(
    app: SupervisedApp,
    port: int = DEFAULT_CONTROL_PORT,
) -> FastMCP:
    """Create and configure the MCP control server for ``app``."""

    mcp = FastMCP(
        name="tower",
        instructions=(
            f"Controls the development build of '{app.name}'. "
            "Use restart_app after editing code to rebuild and relaunch it, "
            "app_status to check whether it is serving and read the last "
            "captured application error, and stop_app to shut it down."
        ),
        host="127.0.0.1",
        port=port,
        stateless_http=True,
    )

    def _error(exc: Exception) -> dict:
        return {**app.status(), "status": "error", "error": str(exc)}

    # ------------------------------------------------------------------
    # Tool: start_app
    # ------------------------------------------------------------------
    @mcp.tool()
    async def start_app(build: bool = True) -> dict:
        """Build (unless build is False) and start the app.

        Returns once the app accepts connections on its port. If a start
        is already in flight, waits for it and returns its outcome.

        Args:
            build: Rebuild the artifact first. With False, runs the last
                   successful build and fails if there is none.
        """
        try:
            await app.start(build=build)
        except TowerError as exc:
            return _error(exc)
        return {**app.status(), "status": "ok"}

    # ------------------------------------------------------------------
    # Tool: restart_app
    # ------------------------------------------------------------------
    @mcp.tool()
    async def restart_app() -> dict:
        """Stop the app, rebuild it and start it again.

        Build errors are returned in the "error" field.
        """
        try:
            await app.restart()
        except TowerError as exc:
            return _error(exc)
        return {**app.status(), "status": "ok"}

    # ------------------------------------------------------------------
    # Tool: stop_app
    # ------------------------------------------------------------------
    @mcp.tool()
    async def stop_app() -> dict:
        """Kill the app and delete its build artifact. No-op if not running."""
        app.stop()
        return {**app.status(), "status": "ok"}

    # ------------------------------------------------------------------
    # Tool: app_status
    # ------------------------------------------------------------------
    @mcp.tool()
    async def app_status() -> dict:
        """Report state, pid, exit code and the last captured application error."""
        return app.status()

    return mcp
