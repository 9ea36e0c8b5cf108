import asyncio
import json
import logging

import pytest

from agent_relay.bot.upstream_client import UpstreamSignal, UpstreamSignalKind
from agent_relay.config.settings import RelaySettings


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test"""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    logging.basicConfig(level=logging.NOTSET)
    yield


class MockWebSocket:
    """A downstream websocket mock that records sent messages."""

    def __init__(self):
        self.sent_messages = []
        self.closed = False
        self.fail_sends = False

    async def send_text(self, text):
        if self.fail_sends:
            raise RuntimeError("Cannot call send once a close message has been sent")
        self.sent_messages.append(text)

    async def close(self, code=1000):
        self.closed = True

    def messages(self):
        return [json.loads(m) for m in self.sent_messages]

    def of_type(self, message_type):
        return [m for m in self.messages() if m["type"] == message_type]


class FakeUpstreamClient:
    """Stands in for UpstreamSessionClient; records payloads sent upstream."""

    def __init__(self, settings, on_signal, session_id="", open_error=None, gate=None, close_error=None):
        self.settings = settings
        self.session_id = session_id
        self.on_signal = on_signal
        self.open_error = open_error
        self.gate = gate
        self.close_error = close_error
        self.open_calls = []
        self.sent = []
        self.is_open = False
        self.closed = False

    async def open(self, agent_id, credential_mode):
        self.open_calls.append((agent_id, credential_mode))
        if self.gate is not None:
            await self.gate.wait()
        if self.open_error is not None:
            raise self.open_error
        self.is_open = True
        await self.on_signal(UpstreamSignal(UpstreamSignalKind.OPENED))

    async def send(self, payload):
        if not self.is_open:
            return False
        # Encode the way the real client does before it hits the socket
        try:
            data = json.dumps(payload)
        except (TypeError, ValueError):
            return False
        self.sent.append(json.loads(data))
        return True

    async def close(self):
        self.closed = True
        self.is_open = False
        if self.close_error is not None:
            raise self.close_error

    async def emit(self, payload):
        await self.on_signal(UpstreamSignal(UpstreamSignalKind.MESSAGE, raw=json.dumps(payload)))

    async def drop(self, code=1000, reason="done"):
        self.is_open = False
        await self.on_signal(UpstreamSignal(UpstreamSignalKind.CLOSED, code=code, reason=reason))

    async def fail(self, cause):
        self.is_open = False
        await self.on_signal(UpstreamSignal(UpstreamSignalKind.ERRORED, cause=cause))

    def sent_of_type(self, message_type):
        return [p for p in self.sent if p.get("type") == message_type]


class UpstreamFactory:
    """client_factory for SessionBridge that keeps every client it builds."""

    def __init__(self, open_error=None, gate=None, close_error=None):
        self.open_error = open_error
        self.gate = gate
        self.close_error = close_error
        self.clients = []

    def __call__(self, settings, on_signal, session_id=""):
        client = FakeUpstreamClient(
            settings,
            on_signal,
            session_id=session_id,
            open_error=self.open_error,
            gate=self.gate,
            close_error=self.close_error,
        )
        self.clients.append(client)
        return client

    @property
    def client(self):
        return self.clients[-1]


async def eventually(predicate, timeout=2.0):
    """Yield to the event loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.002)


@pytest.fixture
def settings():
    return RelaySettings(agent_id="agent-123")


@pytest.fixture
def mock_websocket():
    return MockWebSocket()


@pytest.fixture
def upstream_factory():
    return UpstreamFactory()
