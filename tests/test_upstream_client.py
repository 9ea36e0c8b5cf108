import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from websockets.exceptions import ConnectionClosedError, InvalidURI

from agent_relay.bot.exceptions import (
    AuthenticationFailure,
    UpstreamConnectTimeout,
    UpstreamTransportError,
)
from agent_relay.bot.upstream_client import (
    CredentialMode,
    UpstreamSessionClient,
    UpstreamSignalKind,
    credential_mode_for,
)
from agent_relay.config.settings import RelaySettings


class FakeUpstreamSocket:
    """Async-iterable stand-in for a websockets client connection."""

    def __init__(self, messages=(), error=None):
        self.messages = list(messages)
        self.error = error
        self.sent = []
        self.closed = False
        self.close_code = 1000
        self.close_reason = "conversation ended"

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message
        if self.error is not None:
            raise self.error

    async def send(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True


class SignalRecorder:
    def __init__(self):
        self.signals = []

    async def __call__(self, signal):
        self.signals.append(signal)

    def kinds(self):
        return [s.kind for s in self.signals]


def _http_client(response=None, error=None):
    client = MagicMock()
    client.get = AsyncMock(return_value=response, side_effect=error)
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


def test_credential_mode_follows_api_key():
    assert credential_mode_for(RelaySettings()) == CredentialMode.DIRECT
    assert credential_mode_for(RelaySettings(api_key="sk-test")) == CredentialMode.SIGNED_URL


@pytest.mark.asyncio
class TestResolveUrl:

    async def test_direct_mode(self):
        client = UpstreamSessionClient(RelaySettings(), SignalRecorder())
        url = await client.resolve_url("agent-1", CredentialMode.DIRECT)
        assert url == "wss://api.elevenlabs.io/v1/convai/conversation?agent_id=agent-1"

    async def test_signed_url_mode(self):
        settings = RelaySettings(api_key="sk-test")
        client = UpstreamSessionClient(settings, SignalRecorder())
        response = httpx.Response(
            200,
            json={"signed_url": "wss://signed.example/conv?token=abc"},
            request=httpx.Request("GET", "https://api.elevenlabs.io"),
        )
        http_client = _http_client(response)

        with patch("agent_relay.bot.upstream_client.httpx.AsyncClient", return_value=http_client):
            url = await client.resolve_url("agent-1", CredentialMode.SIGNED_URL)

        assert url == "wss://signed.example/conv?token=abc"
        args, kwargs = http_client.get.call_args
        assert args[0] == "https://api.elevenlabs.io/v1/convai/conversation/get-signed-url"
        assert kwargs["params"] == {"agent_id": "agent-1"}
        assert kwargs["headers"] == {"xi-api-key": "sk-test"}

    async def test_signed_url_rejected(self):
        client = UpstreamSessionClient(RelaySettings(api_key="bad-key"), SignalRecorder())
        response = httpx.Response(
            401, json={"detail": "invalid key"}, request=httpx.Request("GET", "https://api.elevenlabs.io")
        )

        with patch("agent_relay.bot.upstream_client.httpx.AsyncClient", return_value=_http_client(response)):
            with pytest.raises(AuthenticationFailure) as exc_info:
                await client.resolve_url("agent-1", CredentialMode.SIGNED_URL)

        assert exc_info.value.status_code == 401

    async def test_signed_url_network_error(self):
        client = UpstreamSessionClient(RelaySettings(api_key="sk-test"), SignalRecorder())
        http_client = _http_client(error=httpx.ConnectError("unreachable"))

        with patch("agent_relay.bot.upstream_client.httpx.AsyncClient", return_value=http_client):
            with pytest.raises(AuthenticationFailure):
                await client.resolve_url("agent-1", CredentialMode.SIGNED_URL)

    async def test_signed_url_malformed_body(self):
        client = UpstreamSessionClient(RelaySettings(api_key="sk-test"), SignalRecorder())
        response = httpx.Response(200, json={"url": "x"}, request=httpx.Request("GET", "https://api.elevenlabs.io"))

        with patch("agent_relay.bot.upstream_client.httpx.AsyncClient", return_value=_http_client(response)):
            with pytest.raises(AuthenticationFailure):
                await client.resolve_url("agent-1", CredentialMode.SIGNED_URL)


@pytest.mark.asyncio
class TestUpstreamSessionClient:

    async def test_open_reports_opened_then_messages_then_closed(self):
        recorder = SignalRecorder()
        client = UpstreamSessionClient(RelaySettings(), recorder, session_id="s1")
        socket = FakeUpstreamSocket(messages=['{"type": "ping"}', '{"type": "interruption"}'])

        with patch("agent_relay.bot.upstream_client.websockets.connect", AsyncMock(return_value=socket)):
            await client.open("agent-1", CredentialMode.DIRECT)
        await client._recv_task

        assert recorder.kinds() == [
            UpstreamSignalKind.OPENED,
            UpstreamSignalKind.MESSAGE,
            UpstreamSignalKind.MESSAGE,
            UpstreamSignalKind.CLOSED,
        ]
        assert recorder.signals[1].raw == '{"type": "ping"}'
        assert recorder.signals[-1].code == 1000
        assert recorder.signals[-1].reason == "conversation ended"
        assert client.messages_received == 2
        assert not client.is_open

    async def test_abnormal_close_is_reported_as_error(self):
        recorder = SignalRecorder()
        client = UpstreamSessionClient(RelaySettings(), recorder)
        socket = FakeUpstreamSocket(error=ConnectionClosedError(None, None))

        with patch("agent_relay.bot.upstream_client.websockets.connect", AsyncMock(return_value=socket)):
            await client.open("agent-1", CredentialMode.DIRECT)
        await client._recv_task

        assert recorder.kinds() == [UpstreamSignalKind.OPENED, UpstreamSignalKind.ERRORED]
        assert isinstance(recorder.signals[-1].cause, UpstreamTransportError)

    async def test_open_timeout(self):
        client = UpstreamSessionClient(RelaySettings(connect_timeout=0.05), SignalRecorder())

        async def never_connects(*args, **kwargs):
            await asyncio.sleep(10)

        with patch("agent_relay.bot.upstream_client.websockets.connect", never_connects):
            with pytest.raises(UpstreamConnectTimeout) as exc_info:
                await client.open("agent-1", CredentialMode.DIRECT)

        assert exc_info.value.timeout == 0.05
        assert not client.is_open

    async def test_open_transport_failure(self):
        recorder = SignalRecorder()
        client = UpstreamSessionClient(RelaySettings(), recorder)
        connect = AsyncMock(side_effect=OSError("connection refused"))

        with patch("agent_relay.bot.upstream_client.websockets.connect", connect):
            with pytest.raises(UpstreamTransportError):
                await client.open("agent-1", CredentialMode.DIRECT)

        assert recorder.signals == []

    async def test_open_rejects_invalid_uri(self):
        client = UpstreamSessionClient(RelaySettings(), SignalRecorder())
        connect = AsyncMock(side_effect=InvalidURI("nope", "not a websocket URI"))

        with patch("agent_relay.bot.upstream_client.websockets.connect", connect):
            with pytest.raises(UpstreamTransportError):
                await client.open("agent-1", CredentialMode.DIRECT)

    async def test_send_before_open_is_dropped(self):
        client = UpstreamSessionClient(RelaySettings(), SignalRecorder())
        assert await client.send({"user_audio_chunk": "AAA="}) is False

    async def test_send_serializes_payload(self):
        client = UpstreamSessionClient(RelaySettings(), SignalRecorder())
        socket = FakeUpstreamSocket()
        client.ws = socket
        client._open = True

        assert await client.send({"type": "pong", "event_id": 1}) is True
        assert json.loads(socket.sent[0]) == {"type": "pong", "event_id": 1}
        assert client.messages_sent == 1

    async def test_send_unencodable_payload_is_dropped(self):
        client = UpstreamSessionClient(RelaySettings(), SignalRecorder())
        socket = FakeUpstreamSocket()
        client.ws = socket
        client._open = True

        assert await client.send({"type": "client_tool_result", "result": object()}) is False
        assert socket.sent == []
        assert client.is_open

    async def test_close_is_idempotent_and_silent(self):
        recorder = SignalRecorder()
        client = UpstreamSessionClient(RelaySettings(), recorder)
        gate = asyncio.Event()

        class BlockingSocket(FakeUpstreamSocket):
            async def _iterate(self):
                await gate.wait()
                yield '{"type": "ping"}'

        socket = BlockingSocket()
        with patch("agent_relay.bot.upstream_client.websockets.connect", AsyncMock(return_value=socket)):
            await client.open("agent-1", CredentialMode.DIRECT)

        await client.close()
        await client.close()

        assert socket.closed
        assert recorder.kinds() == [UpstreamSignalKind.OPENED]
        assert await client.send({"type": "pong"}) is False

    async def test_open_twice_is_rejected(self):
        client = UpstreamSessionClient(RelaySettings(), SignalRecorder())
        socket = FakeUpstreamSocket()
        with patch("agent_relay.bot.upstream_client.websockets.connect", AsyncMock(return_value=socket)):
            await client.open("agent-1", CredentialMode.DIRECT)
            with pytest.raises(UpstreamTransportError):
                await client.open("agent-1", CredentialMode.DIRECT)
        await client.close()
