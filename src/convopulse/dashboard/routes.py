"""FastAPI routes for the analytics REST API and WebSocket."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, HTTPException, WebSocket

from convopulse import __version__
from convopulse.errors import ConversationNotFoundError
from convopulse.logging import get_logger
from convopulse.reports import list_snapshots

if TYPE_CHECKING:
    from convopulse.service import AnalyticsService

log = get_logger("dashboard.routes")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(service: AnalyticsService) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="ConvoPulse",
        description="Live analytics for local assistant conversation logs",
        version=__version__,
    )
    app.state.service = service
    _register_routes(app, service)
    return app


def _register_routes(app: FastAPI, service: AnalyticsService) -> None:
    """Register all API routes."""

    @app.get("/api/version")
    async def api_version() -> dict[str, Any]:
        return {"name": "convopulse", "version": __version__, "websocket": service.config.websocket.path}

    @app.get("/api/data")
    async def api_data() -> dict[str, Any]:
        """Full analysis result with session data."""
        return service.data_payload()

    @app.get("/api/realtime")
    async def api_realtime() -> dict[str, Any]:
        return service.realtime_payload()

    @app.get("/api/refresh")
    async def api_refresh() -> dict[str, Any]:
        """Force a full reload."""
        log.info("Manual refresh requested")
        await service.load_data()
        return {"success": True, "message": "Data refreshed", "timestamp": _now_iso()}

    @app.get("/api/conversation-state")
    async def api_conversation_state() -> dict[str, Any]:
        """States of conversations with a running process."""
        try:
            return await service.conversation_states()
        except Exception as e:
            log.exception("Conversation state lookup failed")
            raise HTTPException(status_code=500, detail="Failed to get conversation states") from e

    @app.get("/api/session/data")
    async def api_session_data() -> dict[str, Any]:
        """Usage windows, plan limits and the session timer."""
        try:
            return await service.session_payload()
        except Exception as e:
            log.exception("Session data failed")
            raise HTTPException(status_code=500, detail="Failed to get session data") from e

    @app.get("/api/conversations/{conversation_id}")
    async def api_conversation(conversation_id: str) -> dict[str, Any]:
        """Full message history of one conversation."""
        try:
            return await service.analyzer.get_conversation_detail(conversation_id)
        except ConversationNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except OSError as e:
            raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} unreadable") from e

    @app.get("/api/cache/stats")
    async def api_cache_stats() -> dict[str, Any]:
        return service.cache.get_stats()

    @app.get("/api/system/health")
    async def api_health() -> dict[str, Any]:
        return service.health()

    @app.post("/api/snapshot")
    async def api_snapshot() -> dict[str, Any]:
        """Write the current analysis to a snapshot file."""
        path = await service.write_snapshot()
        return {"success": True, "path": str(path), "timestamp": _now_iso()}

    @app.get("/api/snapshots")
    async def api_snapshots() -> list[dict[str, Any]]:
        paths = await service.cache.run_blocking(list_snapshots, service.config.paths.resolved_reports())
        return [{"name": p.name, "path": str(p)} for p in paths]

    @app.websocket(service.config.websocket.path)
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """WebSocket endpoint for real-time updates."""
        await service.websocket.handle_connection(websocket)
