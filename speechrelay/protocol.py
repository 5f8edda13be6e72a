"""Message types exchanged over the relay WebSocket channel.

Text frames carry JSON objects with an ``event`` key. Binary frames carry
raw int16 PCM audio and need no envelope.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# Client -> server
EVENT_RECORDING = "recording"
EVENT_RECOGNISE_FILE = "recogniseFile"

# Server -> client
EVENT_STATUS_CHANGE = "recordingStatusChange"
EVENT_RECORDING_DATA = "recordingData"
EVENT_RECORDING_ERROR = "recordingError"


class ProtocolError(ValueError):
    """A frame could not be decoded into a known message."""


class RecordingAction(str, Enum):
    START = "start"
    STOP = "stop"


class ResponseType(str, Enum):
    DATA = "data"
    STATUS = "status"
    ERROR = "error"


# --- Recognition results ---


@dataclass
class Alternative:
    transcript: str
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"transcript": self.transcript, "confidence": self.confidence}


@dataclass
class RecognitionResult:
    """One utterance: ranked alternatives plus a finality flag."""

    alternatives: List[Alternative] = field(default_factory=list)
    is_final: bool = False
    stability: float = 0.0

    @property
    def transcript(self) -> str:
        return self.alternatives[0].transcript if self.alternatives else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alternatives": [alt.to_dict() for alt in self.alternatives],
            "isFinal": self.is_final,
            "stability": self.stability,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RecognitionResult":
        return cls(
            alternatives=[
                Alternative(
                    transcript=alt.get("transcript", ""),
                    confidence=alt.get("confidence", 0.0),
                )
                for alt in payload.get("alternatives", [])
            ],
            is_final=bool(payload.get("isFinal", False)),
            stability=payload.get("stability", 0.0),
        )


def describe_error(error: Any) -> Optional[Dict[str, Any]]:
    """Render an exception or provider status as a JSON-safe payload."""
    if error is None:
        return None
    if isinstance(error, dict):
        return error
    if isinstance(error, BaseException):
        code = getattr(error, "code", None)
        if callable(code):
            code = code()
        return {
            "code": str(getattr(code, "name", code) or type(error).__name__),
            "message": str(error) or type(error).__name__,
        }
    # google.rpc.Status and similar objects.
    return {
        "code": str(getattr(error, "code", "error")),
        "message": str(getattr(error, "message", error)),
    }


# --- Speech adapter responses ---


@dataclass
class AdapterResponse:
    """Uniform streaming callback payload from a speech adapter."""

    type: ResponseType
    recording: bool
    data: Optional[List[RecognitionResult]] = None
    error: Any = None


@dataclass
class FileRecognitionResponse:
    success: bool
    data: Optional[List[RecognitionResult]] = None
    error: Any = None


# --- Client -> server messages ---


@dataclass
class RecordingControl:
    action: RecordingAction
    options: Optional[Dict[str, Any]] = None

    def to_json(self) -> str:
        payload: Dict[str, Any] = {"event": EVENT_RECORDING, "action": self.action.value}
        if self.options is not None:
            payload["options"] = self.options
        return json.dumps(payload)


@dataclass
class AudioChunk:
    data: bytes


@dataclass
class RecogniseFile:
    audio: str
    parameters: Optional[Dict[str, Any]] = None

    def to_json(self) -> str:
        return json.dumps({
            "event": EVENT_RECOGNISE_FILE,
            "audio": self.audio,
            "parameters": self.parameters,
        })


ClientMessage = Union[RecordingControl, AudioChunk, RecogniseFile]


def _load_object(raw: str) -> Dict[str, Any]:
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError:
        raise ProtocolError("Invalid JSON payload")
    if not isinstance(msg, dict):
        raise ProtocolError("Message must be a JSON object")
    event = msg.get("event")
    if not isinstance(event, str) or not event:
        raise ProtocolError("Message 'event' must be a non-empty string")
    return msg


def parse_client_message(raw: Union[str, bytes]) -> ClientMessage:
    """Decode one frame received by the relay server."""
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return AudioChunk(data=bytes(raw))

    msg = _load_object(raw)
    event = msg["event"]

    if event == EVENT_RECORDING:
        try:
            action = RecordingAction(msg.get("action"))
        except ValueError:
            raise ProtocolError(f"Unknown recording action: {msg.get('action')!r}")
        options = msg.get("options")
        if options is not None and not isinstance(options, dict):
            raise ProtocolError("Recording 'options' must be a JSON object")
        return RecordingControl(action=action, options=options)

    if event == EVENT_RECOGNISE_FILE:
        audio = msg.get("audio")
        if not isinstance(audio, str) or not audio:
            raise ProtocolError("File 'audio' must be a non-empty base64 string")
        parameters = msg.get("parameters")
        if parameters is not None and not isinstance(parameters, dict):
            raise ProtocolError("File 'parameters' must be a JSON object")
        return RecogniseFile(audio=audio, parameters=parameters)

    raise ProtocolError(f"Unknown event: {event}")


# --- Server -> client messages ---


def _results_payload(data: Optional[List[RecognitionResult]]) -> Optional[List[Dict[str, Any]]]:
    if data is None:
        return None
    return [result.to_dict() for result in data]


@dataclass
class RecordingStatusChange:
    recording: bool
    error: Any = None
    event = EVENT_STATUS_CHANGE

    def to_json(self) -> str:
        return json.dumps({
            "event": self.event,
            "recording": self.recording,
            "error": describe_error(self.error),
        })


@dataclass
class RecordingData:
    recording: Optional[bool]
    data: Optional[List[RecognitionResult]] = None
    error: Any = None
    event = EVENT_RECORDING_DATA

    def to_json(self) -> str:
        return json.dumps({
            "event": self.event,
            "recording": self.recording,
            "data": _results_payload(self.data),
            "error": describe_error(self.error),
        })


@dataclass
class RecordingError:
    recording: Optional[bool]
    error: Any = None
    event = EVENT_RECORDING_ERROR

    def to_json(self) -> str:
        return json.dumps({
            "event": self.event,
            "recording": self.recording,
            "error": describe_error(self.error),
        })


ServerMessage = Union[RecordingStatusChange, RecordingData, RecordingError]


def parse_server_message(raw: Union[str, bytes]) -> ServerMessage:
    """Decode one frame received by the capture client."""
    if isinstance(raw, (bytes, bytearray)):
        raise ProtocolError("Unexpected binary frame from server")

    msg = _load_object(raw)
    event = msg["event"]
    recording = msg.get("recording")
    error = msg.get("error")

    if event == EVENT_STATUS_CHANGE:
        return RecordingStatusChange(recording=bool(recording), error=error)
    if event == EVENT_RECORDING_DATA:
        data = msg.get("data")
        results = [RecognitionResult.from_dict(item) for item in data] if data else None
        return RecordingData(recording=recording, data=results, error=error)
    if event == EVENT_RECORDING_ERROR:
        return RecordingError(recording=recording, error=error)

    raise ProtocolError(f"Unknown event: {event}")
