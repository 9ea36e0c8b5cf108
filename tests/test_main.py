import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from agent_relay.bot.session_bridge import MISSING_AGENT_MESSAGE
from agent_relay.main import app, bridge, settings, tool_registry, websocket_manager
from tests.conftest import UpstreamFactory

client = TestClient(app)


def test_health_check():
    """Test the health check endpoint returns correct response"""
    response = client.get("/health")
    assert response.status_code == 200

    response_json = response.json()
    assert response_json["status"] == "healthy"
    assert isinstance(response_json["agent_id_configured"], bool)
    assert isinstance(response_json["api_key_configured"], bool)
    assert response_json["active_sessions"] == 0
    assert response_json["sessions"] == []
    assert "avr_hangup" in response_json["tools"]
    assert "avr_transfer" in response_json["tools"]


def test_root_endpoint():
    """Test the root endpoint returns the correct API information"""
    response = client.get("/")
    assert response.status_code == 200

    response_json = response.json()
    assert response_json["name"] == "Agent Relay"
    assert "description" in response_json
    assert response_json["version"] == "1.0.0"
    assert "/ws" in response_json["endpoints"]
    assert "/health" in response_json["endpoints"]


def test_websocket_manager_wiring():
    """Test that the websocket manager shares the application's bridge"""
    assert websocket_manager.bridge is bridge
    assert bridge.settings is settings
    assert bridge.dispatcher.registry is tool_registry


@pytest.fixture
def fake_upstream(monkeypatch):
    factory = UpstreamFactory()
    monkeypatch.setattr(bridge, "_client_factory", factory)
    return factory


def test_websocket_session(monkeypatch, fake_upstream):
    """Test a client session over the /ws endpoint"""
    monkeypatch.setattr(settings, "agent_id", "agent-1")

    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "init"})
        connected = websocket.receive_json()
        assert connected["type"] == "connected"
        assert connected["agentId"] == "agent-1"

        health = client.get("/health").json()
        assert health["active_sessions"] == 1
        assert health["sessions"][0]["session_id"] == connected["sessionId"]
        assert health["sessions"][0]["status"] == "active"

        websocket.send_json({"type": "ping"})
        pong = websocket.receive_json()
        assert pong["type"] == "pong"

    assert fake_upstream.client.open_calls[0][0] == "agent-1"


def test_websocket_agent_header(monkeypatch, fake_upstream):
    """Test that the x-agent-id header selects the agent"""
    monkeypatch.setattr(settings, "agent_id", None)

    with client.websocket_connect("/ws", headers={"x-agent-id": "header-agent"}) as websocket:
        websocket.send_json({"type": "init"})
        connected = websocket.receive_json()
        assert connected["agentId"] == "header-agent"


def test_websocket_without_agent_id(monkeypatch, fake_upstream):
    """Test that a session without an agent id is rejected and closed"""
    monkeypatch.setattr(settings, "agent_id", None)

    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "init"})
        error = websocket.receive_json()
        assert error == {"type": "error", "message": MISSING_AGENT_MESSAGE}
        with pytest.raises(WebSocketDisconnect):
            websocket.receive_json()

    assert fake_upstream.clients == []
