"""
WebSocket connection manager for downstream relay clients.

This module implements the server side of the downstream session protocol:
- Accept the WebSocket connection and register a session with the bridge
- Read client messages and hand them to the session bridge
- Wait for the session to finish, whichever side ends it

The WebSocketManager is the only place that touches the FastAPI WebSocket
receive path; sending and lifecycle decisions belong to the SessionBridge.
"""

import asyncio
import logging
import socket
from typing import Optional

from fastapi import WebSocket

from agent_relay.bot.session_bridge import SessionBridge
from agent_relay.config.constants import HEADER_AGENT_ID, HEADER_SESSION_ID, LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)


class WebSocketManager:
    """Accepts downstream WebSocket connections and feeds them into the session bridge."""

    def __init__(self, bridge: SessionBridge):
        self.bridge = bridge

    async def _optimize_socket(self, websocket: WebSocket) -> None:
        """
        Optimize the WebSocket's underlying TCP socket for low-latency transmission.

        Args:
            websocket: The FastAPI WebSocket connection
        """
        try:
            client = websocket.client
            if hasattr(client, "sock") and client.sock is not None:
                # Disable Nagle's algorithm to send packets immediately
                client.sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                logger.info("Optimized socket: TCP_NODELAY enabled for low latency")
        except OSError as e:
            logger.warning(f"Could not optimize socket: {e}")

    async def handle_websocket(self, websocket: WebSocket) -> None:
        """Handle a downstream WebSocket connection throughout its lifecycle.

        Args:
            websocket (WebSocket): The FastAPI WebSocket connection object

        This method:
        1. Accepts the WebSocket connection
        2. Creates a bridged session (agent id and session id may come from headers)
        3. Reads client messages until the client disconnects or the session closes
        4. Waits for the session's teardown to finish
        """
        await websocket.accept()
        await self._optimize_socket(websocket)

        agent_id: Optional[str] = websocket.headers.get(HEADER_AGENT_ID)
        session_id: Optional[str] = websocket.headers.get(HEADER_SESSION_ID)
        session = self.bridge.create_session(websocket, agent_id=agent_id, session_id=session_id)
        logger.info(f"New downstream client connected: {session.session_id}")

        reader = asyncio.create_task(self._read_downstream(websocket, session))
        closed = asyncio.create_task(self.bridge.wait_closed(session.session_id))
        try:
            done, _ = await asyncio.wait({reader, closed}, return_when=asyncio.FIRST_COMPLETED)
            if closed not in done:
                await closed
        finally:
            if not reader.done():
                reader.cancel()
                try:
                    await reader
                except asyncio.CancelledError:
                    pass
            if not closed.done():
                closed.cancel()
        logger.info(f"Downstream connection finished: {session.session_id}")

    async def _read_downstream(self, websocket: WebSocket, session) -> None:
        """Read messages from the client until it disconnects."""
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    self.bridge.downstream_closed(session.session_id, message.get("code"))
                    return
                if message.get("text") is not None:
                    await self.bridge.handle_downstream_message(session.session_id, message["text"])
                elif message.get("bytes") is not None:
                    await self.bridge.handle_downstream_message(session.session_id, message["bytes"])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.bridge.downstream_errored(session.session_id, e)
