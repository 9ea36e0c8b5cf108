"""
Client for the upstream conversational voice-agent WebSocket.

One UpstreamSessionClient owns exactly one upstream connection for one bridged
session. It resolves the connection target (direct, or through the signed-URL
credential exchange), opens the socket within a bounded timeout and reports
lifecycle signals to a single async callback:

- ``opened`` once the socket is connected
- ``message`` for every raw payload received
- ``closed`` with the close code and reason when the peer closes normally
- ``errored`` with the cause when the connection fails after opening
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import httpx
import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from agent_relay.bot.exceptions import (
    AuthenticationFailure,
    UpstreamConnectTimeout,
    UpstreamTransportError,
)
from agent_relay.config.constants import (
    API_KEY_HEADER,
    CREDENTIAL_REQUEST_TIMEOUT,
    LOGGER_NAME,
    SIGNED_URL_PATH,
)
from agent_relay.config.settings import RelaySettings
from agent_relay.models.upstream_schemas import SignedUrlResponse

logger = logging.getLogger(LOGGER_NAME)

# WebSocket configuration for low latency
WS_MAX_SIZE = 16 * 1024 * 1024  # 16MB - large enough for audio chunks
WS_PING_INTERVAL = 20
WS_PING_TIMEOUT = 20


class CredentialMode(str, Enum):
    """How the upstream connection URI is obtained."""

    DIRECT = "direct"
    SIGNED_URL = "signed-url"


class UpstreamSignalKind(str, Enum):
    OPENED = "opened"
    MESSAGE = "message"
    CLOSED = "closed"
    ERRORED = "errored"


@dataclass(frozen=True)
class UpstreamSignal:
    """A lifecycle signal from the upstream connection."""

    kind: UpstreamSignalKind
    raw: Optional[Union[str, bytes]] = None
    code: Optional[int] = None
    reason: str = ""
    cause: Optional[BaseException] = None


SignalHandler = Callable[[UpstreamSignal], Awaitable[None]]


def credential_mode_for(settings: RelaySettings) -> CredentialMode:
    """A configured API key selects the signed-URL exchange; otherwise connect directly."""
    return CredentialMode.SIGNED_URL if settings.uses_signed_url else CredentialMode.DIRECT


class UpstreamSessionClient:
    """
    Client owning one upstream agent connection for one bridged session.
    """

    def __init__(self, settings: RelaySettings, on_signal: SignalHandler, session_id: str = ""):
        self.settings = settings
        self.session_id = session_id
        self.ws = None
        self._on_signal = on_signal
        self._recv_task: Optional[asyncio.Task] = None
        self._open = False
        self._is_closing = False
        self.messages_received = 0
        self.messages_sent = 0

    @property
    def is_open(self) -> bool:
        return self._open

    async def resolve_url(self, agent_id: str, credential_mode: CredentialMode) -> str:
        """
        Resolve the WebSocket URI for an agent.

        Args:
            agent_id: The upstream agent identifier
            credential_mode: DIRECT builds the URI locally; SIGNED_URL asks the
                credential endpoint for a signed URI

        Raises:
            AuthenticationFailure: if the credential exchange fails
        """
        if credential_mode == CredentialMode.SIGNED_URL:
            logger.info(f"Getting signed URL for private agent: {agent_id}")
            return await self._fetch_signed_url(agent_id)
        logger.info(f"Connecting to public agent: {agent_id}")
        return f"{self.settings.upstream_ws_url}?agent_id={agent_id}"

    async def _fetch_signed_url(self, agent_id: str) -> str:
        if not self.settings.api_key:
            raise AuthenticationFailure("Signed-URL mode requires an API key")
        url = f"{self.settings.upstream_api_url.rstrip('/')}{SIGNED_URL_PATH}"
        try:
            async with httpx.AsyncClient(timeout=CREDENTIAL_REQUEST_TIMEOUT) as client:
                response = await client.get(
                    url,
                    params={"agent_id": agent_id},
                    headers={API_KEY_HEADER: self.settings.api_key},
                )
        except httpx.HTTPError as e:
            raise AuthenticationFailure(f"Failed to get signed URL: {e}") from e

        if not response.is_success:
            raise AuthenticationFailure(
                f"Failed to get signed URL: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        try:
            body = SignedUrlResponse(**response.json())
        except (ValueError, TypeError, ValidationError) as e:
            raise AuthenticationFailure(f"Failed to get signed URL: malformed response ({e})") from e
        return body.signed_url

    async def open(self, agent_id: str, credential_mode: CredentialMode) -> Any:
        """
        Establish the upstream connection.

        Returns:
            The open WebSocket connection

        Raises:
            AuthenticationFailure: credential exchange rejected or errored
            UpstreamConnectTimeout: the socket did not open within the timeout
            UpstreamTransportError: any other connection failure
        """
        if self._open or self.ws is not None:
            raise UpstreamTransportError("Upstream connection already established")
        if self._is_closing:
            raise UpstreamTransportError("Cannot connect - client is closing")

        url = await self.resolve_url(agent_id, credential_mode)
        timeout = self.settings.connect_timeout

        connection_start = time.time()
        try:
            ws = await asyncio.wait_for(
                websockets.connect(
                    url,
                    max_size=WS_MAX_SIZE,
                    ping_interval=WS_PING_INTERVAL,
                    ping_timeout=WS_PING_TIMEOUT,
                    compression=None,  # Disable compression for lower latency
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Timeout while connecting to upstream agent (after {timeout}s)")
            raise UpstreamConnectTimeout(timeout) from e
        except (OSError, WebSocketException) as e:
            logger.error(f"Failed to connect to upstream agent: {e}")
            raise UpstreamTransportError(f"Failed to connect to upstream agent: {e}") from e

        if self._is_closing:
            # Session was torn down while we were connecting
            await ws.close()
            raise UpstreamTransportError("Session closed while connecting")

        self.ws = ws
        self._open = True
        logger.info(
            f"Upstream connection established in {time.time() - connection_start:.2f}s "
            f"for session: {self.session_id}"
        )
        await self._on_signal(UpstreamSignal(UpstreamSignalKind.OPENED))
        self._recv_task = asyncio.create_task(self._recv_loop())
        return ws

    async def send(self, payload: Dict[str, Any]) -> bool:
        """
        Send one JSON payload upstream.

        Returns:
            bool: True if sent; False (logged, dropped) when the connection is not open
            or the payload cannot be encoded as JSON
        """
        if not self._open or self.ws is None:
            logger.warning(f"Upstream not open, dropping outbound message for session: {self.session_id}")
            return False
        try:
            data = json.dumps(payload)
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot encode upstream payload for session {self.session_id}: {e}")
            return False
        try:
            await self.ws.send(data)
        except ConnectionClosed as e:
            logger.warning(f"Upstream connection closed while sending: {e}")
            self._open = False
            return False
        self.messages_sent += 1
        return True

    async def _recv_loop(self) -> None:
        """Read upstream payloads until the connection ends, reporting each as a signal."""
        signal = None
        try:
            async for message in self.ws:
                self.messages_received += 1
                await self._on_signal(UpstreamSignal(UpstreamSignalKind.MESSAGE, raw=message))
            signal = UpstreamSignal(
                UpstreamSignalKind.CLOSED,
                code=getattr(self.ws, "close_code", None),
                reason=getattr(self.ws, "close_reason", None) or "",
            )
        except ConnectionClosedError as e:
            logger.warning(f"Upstream connection closed unexpectedly: {e}")
            signal = UpstreamSignal(UpstreamSignalKind.ERRORED, cause=UpstreamTransportError(str(e)))
        except (OSError, WebSocketException) as e:
            logger.error(f"Error in upstream receive loop: {e}", exc_info=True)
            signal = UpstreamSignal(UpstreamSignalKind.ERRORED, cause=UpstreamTransportError(str(e)))
        finally:
            self._open = False

        logger.info(f"Upstream receive loop exited for session: {self.session_id}")
        if signal is not None and not self._is_closing:
            await self._on_signal(signal)

    async def close(self) -> None:
        """Close the WebSocket connection and cancel the receive task. Idempotent."""
        if self._is_closing:
            return
        self._is_closing = True
        self._open = False

        task = self._recv_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self.ws is not None:
            try:
                await self.ws.close()
            except (OSError, WebSocketException) as e:
                logger.warning(f"Error closing upstream connection: {e}")
        logger.info(f"Upstream client closed for session: {self.session_id}")
