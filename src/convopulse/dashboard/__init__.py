"""Real-time surface: REST API, WebSocket broadcast and the web server.

Usage:
    service = AnalyticsService(config)
    server = DashboardServer(service)
    await service.start()
    await server.start()
"""

from convopulse.dashboard.routes import create_app
from convopulse.dashboard.server import DashboardServer
from convopulse.dashboard.websocket import Client, WebSocketServer

__all__ = [
    "Client",
    "DashboardServer",
    "WebSocketServer",
    "create_app",
]
