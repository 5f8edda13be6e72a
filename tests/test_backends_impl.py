"""Tests for backend implementations with faked cloud clients."""
import asyncio
import base64
import threading

import pytest
from google.api_core.exceptions import ServiceUnavailable
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import speech
from google.rpc import status_pb2

import speechrelay.backends.google_speech as google_mod
from speechrelay.backends.google_speech import GoogleSpeechBackend
from speechrelay.backends.mock import MockSpeechBackend
from speechrelay.options import FileRecognitionOptions, RecognitionConfig, SpeechContext, StreamingOptions
from speechrelay.protocol import ResponseType


class _FakeSpeechClient:
    def __init__(self, responses=(), stream_error=None, recognize_response=None):
        self.responses = list(responses)
        self.stream_error = stream_error
        self.recognize_response = recognize_response
        self.requests = []
        self.recognize_calls = []

    async def streaming_recognize(self, requests):
        if self.stream_error is not None:
            raise self.stream_error

        async def _responses():
            async for request in requests:
                self.requests.append(request)
            for response in self.responses:
                yield response

        return _responses()

    async def recognize(self, config, audio):
        self.recognize_calls.append((config, audio))
        if isinstance(self.recognize_response, Exception):
            raise self.recognize_response
        return self.recognize_response


def _google_backend(client):
    backend = GoogleSpeechBackend()
    backend._create_client = lambda: client
    return backend


def _streaming_response(text, is_final):
    return speech.StreamingRecognizeResponse(
        results=[
            speech.StreamingRecognitionResult(
                alternatives=[speech.SpeechRecognitionAlternative(transcript=text, confidence=0.5)],
                is_final=is_final,
            )
        ]
    )


def test_google_writes_config_once_before_audio():
    client = _FakeSpeechClient(responses=[_streaming_response("hello", True)])
    backend = _google_backend(client)
    events = []
    options = StreamingOptions(
        config=RecognitionConfig(sample_rate=16000, speech_context=SpeechContext(("relay",))),
        single_utterance=True,
    )

    async def scenario():
        session = await backend.open_streaming_session(options, events.append)
        for chunk in (b"a", b"b", b"c"):
            backend.write(session, chunk)
        session.end()
        await session.task

    asyncio.run(scenario())

    assert len(client.requests) == 4
    first = client.requests[0].streaming_config
    assert first.config.sample_rate_hertz == 16000
    assert first.config.encoding == speech.RecognitionConfig.AudioEncoding.LINEAR16
    assert list(first.config.speech_contexts[0].phrases) == ["relay"]
    assert first.single_utterance is True
    assert [r.audio_content for r in client.requests[1:]] == [b"a", b"b", b"c"]

    assert [(e.type, e.recording) for e in events] == [
        (ResponseType.STATUS, True),
        (ResponseType.DATA, True),
        (ResponseType.STATUS, False),
    ]
    assert events[1].data[0].transcript == "hello"
    assert events[1].data[0].is_final is True


def test_google_embedded_error_is_reported():
    error_response = speech.StreamingRecognizeResponse(
        error=status_pb2.Status(code=3, message="bad audio"),
    )
    backend = _google_backend(_FakeSpeechClient(responses=[error_response]))
    events = []

    async def scenario():
        session = await backend.open_streaming_session(StreamingOptions(), events.append)
        backend.write(session, b"a")
        session.end()
        await session.task

    asyncio.run(scenario())

    assert (events[1].type, events[1].recording) == (ResponseType.ERROR, False)
    assert events[1].error == {"code": "3", "message": "bad audio"}


def test_google_transport_error_is_reported():
    backend = _google_backend(_FakeSpeechClient(stream_error=ServiceUnavailable("down")))
    events = []

    async def scenario():
        session = await backend.open_streaming_session(StreamingOptions(), events.append)
        await session.task

    asyncio.run(scenario())

    assert [(e.type, e.recording) for e in events] == [
        (ResponseType.STATUS, True),
        (ResponseType.ERROR, False),
    ]
    assert isinstance(events[1].error, ServiceUnavailable)


def test_google_auth_failure_reported_without_opening():
    backend = GoogleSpeechBackend()

    def _fail():
        raise DefaultCredentialsError("no credentials")

    backend._create_client = _fail
    events = []

    async def scenario():
        return await backend.open_streaming_session(StreamingOptions(), events.append)

    session = asyncio.run(scenario())

    assert session.closed is True
    assert session.task is None
    assert [(e.type, e.recording) for e in events] == [(ResponseType.ERROR, False)]


def test_google_close_stops_callbacks_and_is_idempotent():
    backend = _google_backend(_FakeSpeechClient(responses=[_streaming_response("late", True)]))
    events = []

    async def scenario():
        session = await backend.open_streaming_session(StreamingOptions(), events.append)
        backend.write(session, b"a")
        backend.close(session)
        backend.close(session)
        backend.write(session, b"b")
        await asyncio.sleep(0)
        return session

    session = asyncio.run(scenario())

    assert session.closed is True
    assert [(e.type, e.recording) for e in events] == [(ResponseType.STATUS, True)]


def test_google_client_is_created_off_the_event_loop():
    client = _FakeSpeechClient(recognize_response=speech.RecognizeResponse())
    backend = GoogleSpeechBackend()
    threads = []

    def _create():
        threads.append(threading.get_ident())
        return client

    backend._create_client = _create

    async def scenario():
        loop_thread = threading.get_ident()
        session = await backend.open_streaming_session(StreamingOptions(), lambda response: None)
        backend.close(session)
        await backend.recognize_file("QUJD", None, lambda response: None)
        return loop_thread

    loop_thread = asyncio.run(scenario())

    assert len(threads) == 2
    assert loop_thread not in threads


def test_google_unexpected_stream_failure_is_reported():
    backend = _google_backend(_FakeSpeechClient(stream_error=KeyError("boom")))
    events = []

    async def scenario():
        session = await backend.open_streaming_session(StreamingOptions(), events.append)
        await session.task

    asyncio.run(scenario())

    assert [(e.type, e.recording) for e in events] == [
        (ResponseType.STATUS, True),
        (ResponseType.ERROR, False),
    ]


def test_google_unusable_streaming_config_ends_session_with_error():
    client = _FakeSpeechClient()
    backend = _google_backend(client)
    events = []
    options = StreamingOptions(config=RecognitionConfig(encoding="flac"))

    async def scenario():
        session = await backend.open_streaming_session(options, events.append)
        backend.write(session, b"a")
        backend.write(session, b"b")
        await asyncio.sleep(0)
        return session

    session = asyncio.run(scenario())

    assert session.closed is True
    assert client.requests == []
    assert [(e.type, e.recording) for e in events] == [
        (ResponseType.STATUS, True),
        (ResponseType.ERROR, False),
    ]
    assert isinstance(events[1].error, KeyError)


def test_google_unexpected_file_failure_still_reaches_callback():
    backend = _google_backend(_FakeSpeechClient(recognize_response=speech.RecognizeResponse()))
    backend.file_defaults = FileRecognitionOptions(encoding="flac")
    results = []

    asyncio.run(backend.recognize_file("QUJD", None, results.append))

    assert len(results) == 1
    assert results[0].success is False
    assert isinstance(results[0].error, KeyError)


def test_google_recognize_file_merges_parameters():
    response = speech.RecognizeResponse(
        results=[
            speech.SpeechRecognitionResult(
                alternatives=[speech.SpeechRecognitionAlternative(transcript="file text", confidence=0.75)],
            )
        ]
    )
    client = _FakeSpeechClient(recognize_response=response)
    backend = _google_backend(client)
    backend.file_defaults = FileRecognitionOptions(sample_rate=16000)
    results = []

    asyncio.run(backend.recognize_file(
        base64.b64encode(b"ABC").decode("ascii"),
        {"encoding": "FLAC", "sampleRate": 44100, "speechContext": ["ignored"]},
        results.append,
    ))

    config, audio = client.recognize_calls[0]
    assert config.encoding == speech.RecognitionConfig.AudioEncoding.FLAC
    assert config.sample_rate_hertz == 44100
    assert config.language_code == "en-US"
    assert len(config.speech_contexts) == 0
    assert audio.content == b"ABC"
    assert results[0].success is True
    assert results[0].data[0].transcript == "file text"
    assert results[0].data[0].is_final is True


@pytest.mark.parametrize(
    "payload, parameters, client_result",
    [
        ("!!!not-base64", None, None),
        ("QUJD", {"sampleRate": "fast"}, None),
        ("QUJD", None, ServiceUnavailable("down")),
    ],
)
def test_google_recognize_file_failures(payload, parameters, client_result):
    backend = _google_backend(_FakeSpeechClient(recognize_response=client_result))
    results = []

    asyncio.run(backend.recognize_file(payload, parameters, results.append))

    assert len(results) == 1
    assert results[0].success is False
    assert results[0].error is not None


def test_google_create_client_uses_credentials_file(monkeypatch, tmp_path):
    calls = {}

    def _load(path, scopes):
        calls["load"] = (path, scopes)
        return "CREDS", "project"

    monkeypatch.setattr(google_mod.google.auth, "load_credentials_from_file", _load)
    monkeypatch.setattr(google_mod.speech, "SpeechAsyncClient", lambda credentials: ("CLIENT", credentials))

    key = tmp_path / "key.json"
    client = GoogleSpeechBackend(credentials_file=key)._create_client()

    assert client == ("CLIENT", "CREDS")
    assert calls["load"] == (str(key), google_mod.SCOPES)


def test_google_create_client_falls_back_to_default_credentials(monkeypatch):
    monkeypatch.setattr(google_mod.google.auth, "default", lambda scopes: ("ADC", "project"))
    monkeypatch.setattr(google_mod.speech, "SpeechAsyncClient", lambda credentials: ("CLIENT", credentials))

    assert GoogleSpeechBackend()._create_client() == ("CLIENT", "ADC")


def test_mock_backend_emits_interim_and_final_results():
    backend = MockSpeechBackend(chunks_per_utterance=2)
    events = []

    async def scenario():
        session = await backend.open_streaming_session(StreamingOptions(), events.append)
        for _ in range(4):
            backend.write(session, b"\x00\x00")
        session.end()
        await session.task

    asyncio.run(scenario())

    data = [e for e in events if e.type is ResponseType.DATA]
    assert [(d.data[0].transcript, d.data[0].is_final) for d in data] == [
        ("hello how can", False),
        ("hello how can i help you today", True),
        ("what are", False),
        ("what are your business hours", True),
    ]
    assert (events[-1].type, events[-1].recording) == (ResponseType.STATUS, False)


def test_mock_backend_single_utterance_ends_stream():
    backend = MockSpeechBackend(chunks_per_utterance=1)
    events = []

    async def scenario():
        session = await backend.open_streaming_session(
            StreamingOptions(single_utterance=True, interim_results=False),
            events.append,
        )
        for _ in range(3):
            backend.write(session, b"\x00\x00")
        await session.task

    asyncio.run(scenario())

    assert [(e.type, e.recording) for e in events] == [
        (ResponseType.STATUS, True),
        (ResponseType.DATA, True),
        (ResponseType.STATUS, False),
    ]


def test_mock_backend_rejects_audio_before_config():
    backend = MockSpeechBackend()
    events = []

    async def scenario():
        session = await backend.open_streaming_session(StreamingOptions(), events.append)
        session.put(("audio", b"\x00"))
        await session.task

    asyncio.run(scenario())

    assert (events[-1].type, events[-1].recording) == (ResponseType.ERROR, False)


def test_mock_backend_recognize_file():
    backend = MockSpeechBackend()
    results = []

    asyncio.run(backend.recognize_file("QUJD", {"encoding": "FLAC"}, results.append))

    assert results[0].success is True
    assert "3 bytes, FLAC 16000 Hz" in results[0].data[0].transcript
