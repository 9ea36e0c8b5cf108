"""
FastAPI server for the real-time agent relay.

This module initializes and configures the FastAPI application that accepts
downstream client sessions over WebSocket and bridges each of them to an
upstream conversational voice agent. It wires configuration, logging, the tool
registry and the session bridge together and exposes health information.
"""

import os
from contextlib import asynccontextmanager
from pathlib import Path

import dotenv
from fastapi import FastAPI, WebSocket

from agent_relay.bot.session_bridge import SessionBridge
from agent_relay.bot.tool_dispatcher import ToolDispatcher
from agent_relay.config.logging_config import configure_logging
from agent_relay.config.settings import load_settings
from agent_relay.models.session_store import SessionStore
from agent_relay.tools import ToolRegistry, builtin_tools
from agent_relay.websocket_manager import WebSocketManager

# Load environment variables from .env file if it exists
env_path = Path(".") / ".env"
if env_path.exists():
    dotenv.load_dotenv(env_path)

logger = configure_logging(os.getenv("LOG_LEVEL", "INFO"))
settings = load_settings()

tool_registry = ToolRegistry(builtin_tools(settings.ami_url))
if settings.tools_dir:
    tool_registry.load_directory(settings.tools_dir)

session_store = SessionStore()
bridge = SessionBridge(settings, session_store, ToolDispatcher(tool_registry))
websocket_manager = WebSocketManager(bridge)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Relay ready, tools available: {', '.join(tool_registry.names()) or 'none'}")
    if not settings.agent_id:
        logger.info("No ELEVENLABS_AGENT_ID set - clients must send the x-agent-id header")
    if settings.uses_signed_url:
        logger.info("ELEVENLABS_API_KEY is configured - using signed URLs for private agents")
    else:
        logger.info("No API key set - will attempt to connect to public agents only")
    yield
    await bridge.shutdown()


app = FastAPI(
    title="Agent Relay",
    description="Real-time audio relay between client sessions and a conversational voice agent",
    version="1.0.0",
    lifespan=lifespan,
)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for downstream clients.

    Clients send ``init`` to open the upstream agent session, then stream
    ``audio``; the relay answers with ``connected``, ``transcript``, ``audio``
    frames, ``interruption`` and, on faults, ``error``/``upstream_disconnected``.
    """
    await websocket_manager.handle_websocket(websocket)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring system status.

    Returns:
        dict: Status information including the number and state of live sessions.
    """
    return {
        "status": "healthy",
        "agent_id_configured": bool(settings.agent_id),
        "api_key_configured": settings.uses_signed_url,
        "active_sessions": bridge.active_sessions,
        "sessions": [session.describe() for session in session_store.all().values()],
        "tools": tool_registry.names(),
    }


@app.get("/")
async def root():
    """Root endpoint to display basic information about the API."""
    return {
        "name": "Agent Relay",
        "description": "Real-time audio relay between client sessions and a conversational voice agent",
        "version": "1.0.0",
        "endpoints": {
            "/ws": "WebSocket endpoint for downstream clients",
            "/health": "Health check endpoint",
        },
    }


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting server on http://{settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, http="h11")
