"""Tests for channel message encoding and decoding."""
import json

import pytest

from speechrelay.protocol import (
    Alternative,
    AudioChunk,
    ProtocolError,
    RecogniseFile,
    RecognitionResult,
    RecordingAction,
    RecordingControl,
    RecordingData,
    RecordingError,
    RecordingStatusChange,
    describe_error,
    parse_client_message,
    parse_server_message,
)


def test_binary_frame_is_audio_chunk():
    msg = parse_client_message(b"\x01\x00\x02\x00")
    assert msg == AudioChunk(data=b"\x01\x00\x02\x00")


def test_recording_start_with_options():
    raw = json.dumps({"event": "recording", "action": "start", "options": {"config": {"sampleRate": 48000}}})
    msg = parse_client_message(raw)
    assert msg == RecordingControl(action=RecordingAction.START, options={"config": {"sampleRate": 48000}})


def test_recording_control_round_trips_through_json():
    raw = RecordingControl(action=RecordingAction.STOP).to_json()
    assert json.loads(raw) == {"event": "recording", "action": "stop"}
    assert parse_client_message(raw) == RecordingControl(action=RecordingAction.STOP)


def test_recognise_file_message():
    raw = RecogniseFile(audio="AAAA", parameters={"encoding": "FLAC"}).to_json()
    assert parse_client_message(raw) == RecogniseFile(audio="AAAA", parameters={"encoding": "FLAC"})


@pytest.mark.parametrize(
    "raw, message",
    [
        ("not-json", "Invalid JSON payload"),
        (json.dumps([1, 2]), "Message must be a JSON object"),
        (json.dumps({"action": "start"}), "Message 'event' must be a non-empty string"),
        (json.dumps({"event": "nope"}), "Unknown event: nope"),
        (json.dumps({"event": "recording", "action": "pause"}), "Unknown recording action: 'pause'"),
        (json.dumps({"event": "recording", "action": "start", "options": [1]}),
         "Recording 'options' must be a JSON object"),
        (json.dumps({"event": "recogniseFile", "audio": ""}), "File 'audio' must be a non-empty base64 string"),
    ],
)
def test_malformed_client_frames_raise_protocol_error(raw, message):
    with pytest.raises(ProtocolError) as exc:
        parse_client_message(raw)
    assert str(exc.value) == message


def test_server_messages_serialize_results_and_errors():
    result = RecognitionResult(alternatives=[Alternative("hello", 0.5)], is_final=True, stability=0.0)

    data = json.loads(RecordingData(recording=True, data=[result]).to_json())
    status = json.loads(RecordingStatusChange(recording=False).to_json())
    error = json.loads(RecordingError(recording=False, error=RuntimeError("boom")).to_json())

    assert data == {
        "event": "recordingData",
        "recording": True,
        "data": [{"alternatives": [{"transcript": "hello", "confidence": 0.5}], "isFinal": True, "stability": 0.0}],
        "error": None,
    }
    assert status == {"event": "recordingStatusChange", "recording": False, "error": None}
    assert error["event"] == "recordingError"
    assert error["error"] == {"code": "RuntimeError", "message": "boom"}


def test_parse_server_message_rebuilds_results():
    result = RecognitionResult(alternatives=[Alternative("hi there", 0.9)], is_final=False, stability=0.4)
    parsed = parse_server_message(RecordingData(recording=True, data=[result]).to_json())

    assert isinstance(parsed, RecordingData)
    assert parsed.data == [result]
    assert parsed.data[0].transcript == "hi there"


def test_parse_server_message_rejects_binary():
    with pytest.raises(ProtocolError):
        parse_server_message(b"\x00")


def test_describe_error_variants():
    class _RpcError(Exception):
        def code(self):
            class _Code:
                name = "UNAUTHENTICATED"
            return _Code()

    class _Status:
        code = 3
        message = "bad audio"

    assert describe_error(None) is None
    assert describe_error({"code": "x", "message": "y"}) == {"code": "x", "message": "y"}
    assert describe_error(_RpcError("denied")) == {"code": "UNAUTHENTICATED", "message": "denied"}
    assert describe_error(_Status()) == {"code": "3", "message": "bad audio"}
