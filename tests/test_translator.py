import base64
import json

import pytest

from agent_relay.bot.exceptions import MalformedMessage
from agent_relay.bot.translator import (
    check_audio_formats,
    downstream_pong,
    parse_downstream_message,
    parse_upstream_event,
    pong_for,
    tool_result_envelope,
    upstream_to_downstream,
    user_audio_envelope,
)
from agent_relay.models.message_schemas import (
    AudioChunkMessage,
    ConversationInitiatedMessage,
    InitMessage,
    InterruptionMessage,
    PingMessage,
    TranscriptMessage,
)
from agent_relay.models.upstream_schemas import UpstreamEventKind


def _raw(payload):
    return json.dumps(payload)


class TestParseUpstreamEvent:

    def test_user_transcript(self):
        event = parse_upstream_event(_raw({
            "type": "user_transcript",
            "user_transcription_event": {"user_transcript": "I need help"},
        }))
        assert event.kind == UpstreamEventKind.TRANSCRIPT
        assert event.role == "user"
        assert event.text == "I need help"

    def test_agent_response(self):
        event = parse_upstream_event(_raw({
            "type": "agent_response",
            "agent_response_event": {"agent_response": "How can I help?"},
        }))
        assert event.kind == UpstreamEventKind.TRANSCRIPT
        assert event.role == "agent"
        assert event.text == "How can I help?"

    def test_audio_is_decoded(self):
        pcm = b"\x01\x02" * 100
        event = parse_upstream_event(_raw({
            "type": "audio",
            "audio_event": {"audio_base_64": base64.b64encode(pcm).decode(), "event_id": 3},
        }))
        assert event.kind == UpstreamEventKind.AUDIO_CHUNK
        assert event.audio == pcm
        assert event.event_id == 3

    def test_invalid_audio_is_malformed(self):
        with pytest.raises(MalformedMessage):
            parse_upstream_event(_raw({"type": "audio", "audio_event": {"audio_base_64": "abc"}}))

    def test_ping(self):
        event = parse_upstream_event(_raw({"type": "ping", "ping_event": {"event_id": 42}}))
        assert event.kind == UpstreamEventKind.PING
        assert event.event_id == 42

    def test_interruption_and_correction(self):
        interruption = parse_upstream_event(_raw({"type": "interruption"}))
        correction = parse_upstream_event(_raw({
            "type": "agent_response_correction",
            "agent_response_correction_event": {"corrected_agent_response": "Sorry"},
        }))
        assert interruption.kind == UpstreamEventKind.INTERRUPTION
        assert correction.kind == UpstreamEventKind.AGENT_CORRECTION

    def test_tool_call(self):
        event = parse_upstream_event(_raw({
            "type": "client_tool_call",
            "client_tool_call": {
                "tool_name": "avr_transfer",
                "tool_call_id": "call-1",
                "parameters": {"transfer_extension": "100"},
            },
        }))
        assert event.kind == UpstreamEventKind.TOOL_CALL
        assert event.tool_name == "avr_transfer"
        assert event.tool_call_id == "call-1"
        assert event.parameters == {"transfer_extension": "100"}

    def test_tool_call_without_id_is_malformed(self):
        with pytest.raises(MalformedMessage):
            parse_upstream_event(_raw({
                "type": "client_tool_call",
                "client_tool_call": {"tool_name": "avr_hangup"},
            }))

    def test_tool_call_with_non_object_parameters_is_malformed(self):
        with pytest.raises(MalformedMessage):
            parse_upstream_event(_raw({
                "type": "client_tool_call",
                "client_tool_call": {"tool_name": "x", "tool_call_id": "1", "parameters": [1, 2]},
            }))

    def test_wrongly_typed_fields_are_malformed(self):
        with pytest.raises(MalformedMessage):
            parse_upstream_event(_raw({
                "type": "client_tool_call",
                "client_tool_call": {"tool_name": 5, "tool_call_id": "1"},
            }))

    def test_session_metadata(self):
        event = parse_upstream_event(_raw({
            "type": "conversation_initiation_metadata",
            "conversation_initiation_metadata_event": {"conversation_id": "conv-1"},
        }))
        assert event.kind == UpstreamEventKind.SESSION_METADATA
        assert event.metadata == {"conversation_id": "conv-1"}

    def test_tool_response_ack(self):
        event = parse_upstream_event(_raw({"type": "agent_tool_response"}))
        assert event.kind == UpstreamEventKind.TOOL_RESPONSE_ACK

    def test_unknown_type(self):
        event = parse_upstream_event(_raw({"type": "vad_score", "vad_score_event": {"vad_score": 0.5}}))
        assert event.kind == UpstreamEventKind.UNKNOWN
        assert event.raw_type == "vad_score"

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", json.dumps({"no_type": True})])
    def test_malformed_payloads(self, raw):
        with pytest.raises(MalformedMessage) as exc_info:
            parse_upstream_event(raw)
        assert exc_info.value.source == "upstream"


class TestParseDownstreamMessage:

    def test_init_with_session_id(self):
        message = parse_downstream_message(_raw({"type": "init", "sessionId": "abc"}))
        assert isinstance(message, InitMessage)
        assert message.sessionId == "abc"

    def test_init_blank_session_id_is_none(self):
        message = parse_downstream_message(_raw({"type": "init", "sessionId": "  "}))
        assert message.sessionId is None

    def test_audio(self):
        encoded = base64.b64encode(b"\x00\x01").decode()
        message = parse_downstream_message(_raw({"type": "audio", "audio": encoded}))
        assert isinstance(message, AudioChunkMessage)
        assert message.audio_bytes() == b"\x00\x01"

    def test_ping(self):
        assert isinstance(parse_downstream_message(_raw({"type": "ping"})), PingMessage)

    def test_invalid_audio_is_rejected(self):
        with pytest.raises(MalformedMessage):
            parse_downstream_message(_raw({"type": "audio", "audio": "!!not base64!!"}))

    def test_unknown_type_is_rejected(self):
        with pytest.raises(MalformedMessage) as exc_info:
            parse_downstream_message(_raw({"type": "dance"}))
        assert "Unknown message type" in str(exc_info.value)

    def test_invalid_json_is_rejected(self):
        with pytest.raises(MalformedMessage):
            parse_downstream_message("{oops")


class TestUpstreamToDownstream:

    def test_transcript(self):
        event = parse_upstream_event(_raw({
            "type": "user_transcript",
            "user_transcription_event": {"user_transcript": "hello"},
        }))
        assert upstream_to_downstream(event) == [TranscriptMessage(role="user", text="hello")]

    def test_correction_yields_single_interruption(self):
        event = parse_upstream_event(_raw({"type": "agent_response_correction"}))
        messages = upstream_to_downstream(event)
        assert messages == [InterruptionMessage()]

    def test_metadata_only_in_passthrough_mode(self):
        event = parse_upstream_event(_raw({
            "type": "conversation_initiation_metadata",
            "conversation_initiation_metadata_event": {"conversation_id": "c"},
        }))
        assert upstream_to_downstream(event) == []
        assert upstream_to_downstream(event, passthrough=True) == [
            ConversationInitiatedMessage(metadata={"conversation_id": "c"})
        ]

    def test_audio_ping_and_unknown_produce_nothing(self):
        for payload in (
            {"type": "audio", "audio_event": {"audio_base_64": ""}},
            {"type": "ping", "ping_event": {"event_id": 1}},
            {"type": "something_new"},
        ):
            assert upstream_to_downstream(parse_upstream_event(_raw(payload))) == []


def test_check_audio_formats():
    assert check_audio_formats({
        "user_input_audio_format": "pcm_16000",
        "agent_output_audio_format": "pcm_16000",
    }) == []
    warnings = check_audio_formats({"agent_output_audio_format": "ulaw_8000"})
    assert len(warnings) == 1
    assert "ulaw_8000" in warnings[0]
    assert check_audio_formats({}) == []


def test_envelopes():
    ping = parse_upstream_event(_raw({"type": "ping", "ping_event": {"event_id": 7}}))
    assert pong_for(ping) == {"type": "pong", "event_id": 7}
    assert user_audio_envelope(b"\x00\x01") == {"user_audio_chunk": "AAE="}
    assert tool_result_envelope("call-1", "done", False) == {
        "type": "client_tool_result",
        "tool_call_id": "call-1",
        "result": "done",
        "is_error": False,
    }
    pong = json.loads(downstream_pong().to_json())
    assert pong["type"] == "pong"
    assert isinstance(pong["timestamp"], int)
