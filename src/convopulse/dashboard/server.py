"""Web server lifecycle management."""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import TYPE_CHECKING, Any

from convopulse.logging import get_logger

if TYPE_CHECKING:
    from convopulse.service import AnalyticsService

log = get_logger("dashboard.server")


class DashboardServer:
    """Runs the FastAPI app under uvicorn as a background task."""

    def __init__(self, service: AnalyticsService, host: str | None = None, port: int | None = None) -> None:
        self.service = service
        self.host = host or service.config.server.host
        self.port = port or service.config.server.port
        self._server: Any = None
        self._task: asyncio.Task[None] | None = None
        self._start_time: float | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self.is_running(),
            "host": self.host,
            "port": self.port,
            "uptime": time.time() - self._start_time if self._start_time else 0,
            "connections": self.service.websocket.client_count,
        }

    async def start(self) -> None:
        """Start the web server."""
        if self.is_running():
            raise RuntimeError(f"Server already running on port {self.port}")

        # Import here to avoid startup overhead for the one-shot commands
        import uvicorn

        from convopulse.dashboard.routes import create_app

        app = create_app(self.service)
        config = uvicorn.Config(
            app,
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        self._start_time = time.time()
        log.info("Server started on %s", self.url)

    async def wait(self) -> None:
        """Block until the server exits."""
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def stop(self) -> None:
        """Stop the web server."""
        if not self._task:
            return
        if self._server is not None:
            self._server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=5)
        except asyncio.TimeoutError:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        log.info("Server stopped (was on port %d)", self.port)
        self._task = None
        self._server = None
        self._start_time = None
