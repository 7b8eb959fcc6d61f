"""
API package - FastAPI routes and schemas.
"""

from stateflow.api.routes import graph, tools, websocket

__all__ = ["graph", "tools", "websocket"]
