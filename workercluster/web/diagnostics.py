import asyncio
import logging
from pathlib import Path
from starlette.routing import Route
from starlette.requests import Request
from starlette.applications import Starlette
from starlette.responses import JSONResponse, PlainTextResponse
from workercluster import settings
from workercluster.local.supervisor import persistence

log = logging.getLogger(__name__)


class DiagnosticsEndpoint:
    """
    The two read-only cluster routes, registered on the caller's application.

    Requests are served by whichever worker receives them, so the stats route
    reads the state file the master writes rather than any in-memory state.
    """

    def __init__(self, state_path: Path) -> None:
        self.state_path = Path(state_path)

    async def healthcheck(self, request: Request) -> PlainTextResponse:
        return PlainTextResponse(settings.HEALTHCHECK_BODY)

    async def stats(self, request: Request) -> JSONResponse:
        """
        Returns the persisted snapshot as-is. A missing or malformed state
        file is not caught here and surfaces as a server error.
        """
        content = await asyncio.get_running_loop().run_in_executor(
            None, persistence.read_state_file, self.state_path
        )
        return JSONResponse(content)

    def register(self, app: Starlette) -> None:
        """
        Adds both routes ahead of the application's own routes, so a
        catch-all route registered earlier cannot shadow them.
        """
        app.router.routes[0:0] = [
            Route(settings.HEALTHCHECK_PATH, endpoint=self.healthcheck, methods=["GET"]),
            Route(settings.STATS_PATH, endpoint=self.stats, methods=["GET"]),
        ]
        log.info(f"Cluster diagnostics registered at {settings.HEALTHCHECK_PATH} and {settings.STATS_PATH}.")
