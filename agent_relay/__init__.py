"""
Agent Relay - real-time audio bridge to a conversational voice agent

This application relays audio and conversation events between downstream
clients (browsers, telephony gateways, generic callers) and an upstream
conversational voice-agent service over persistent WebSocket connections.

Architecture Overview:
- FastAPI server exposing the downstream WebSocket endpoint
- One upstream agent connection per downstream session
- Protocol translation, audio re-framing and client tool execution
- An explicit per-session state machine driven by a single pump task

Key Components:
- bot: session bridge, upstream client, translator, audio framer, tool dispatcher
- config: constants, environment settings and logging setup
- models: session state, session store and protocol schemas
- tools: tool registry and built-in telephony tools
- websocket_manager: reads downstream connections into the bridge

Getting Started:
1. Set up environment variables:
   - ELEVENLABS_AGENT_ID: default agent (clients may send x-agent-id instead)
   - ELEVENLABS_API_KEY: optional, required for private agents
   - PORT / HOST / LOG_LEVEL

2. Start the server:
   ```bash
   python run.py
   ```
"""
