"""Mock speech backend for running the relay without cloud credentials."""
from __future__ import annotations

import asyncio
import base64
import binascii
from typing import Any, Dict, Optional, Tuple

from ..options import FileRecognitionOptions, OptionsError, StreamingOptions, merge_options
from ..protocol import (
    AdapterResponse,
    Alternative,
    FileRecognitionResponse,
    RecognitionResult,
    ResponseType,
)
from .base import FileCallback, QueuedStreamingBackend, StreamCallback, StreamingSession


class MockSpeechBackend(QueuedStreamingBackend):
    """Produces canned transcripts from the amount of audio received.

    Every audio chunk yields an interim result; every ``chunks_per_utterance``
    chunks yield a final one. With ``single_utterance`` the stream ends after
    the first final result, as the cloud service does.
    """

    SAMPLE_PHRASES = [
        "hello how can i help you today",
        "what are your business hours",
        "can you repeat that please",
        "thank you for your help",
    ]

    def __init__(
        self,
        chunks_per_utterance: int = 8,
        file_defaults: Optional[FileRecognitionOptions] = None,
    ):
        self.chunks_per_utterance = max(1, chunks_per_utterance)
        self.file_defaults = file_defaults or FileRecognitionOptions()

    def _config_request(self, options: StreamingOptions) -> Tuple[str, Any]:
        return ("config", options)

    def _audio_request(self, audio: bytes) -> Tuple[str, Any]:
        return ("audio", audio)

    def _phrase(self, index: int) -> str:
        return self.SAMPLE_PHRASES[index % len(self.SAMPLE_PHRASES)]

    async def open_streaming_session(
        self,
        options: StreamingOptions,
        callback: StreamCallback,
    ) -> StreamingSession:
        session = StreamingSession(options, callback)
        session.task = asyncio.create_task(self._consume(session))
        session.emit(AdapterResponse(type=ResponseType.STATUS, recording=True))
        return session

    async def _consume(self, session: StreamingSession) -> None:
        chunks = 0
        utterances = 0
        first = True
        async for kind, value in session.requests():
            if first:
                first = False
                if kind != "config":
                    session.emit(AdapterResponse(
                        type=ResponseType.ERROR,
                        recording=False,
                        error={"code": "INVALID_ARGUMENT", "message": "streaming_config must come first"},
                    ))
                    return
                continue
            if kind != "audio":
                continue

            chunks += 1
            phrase = self._phrase(utterances)
            words = phrase.split()
            position = chunks % self.chunks_per_utterance
            is_final = position == 0
            if is_final:
                text = phrase
                utterances += 1
            else:
                upto = max(1, len(words) * position // self.chunks_per_utterance)
                text = " ".join(words[:upto])

            if is_final or session.options.interim_results:
                session.emit(AdapterResponse(
                    type=ResponseType.DATA,
                    recording=True,
                    data=[RecognitionResult(
                        alternatives=[Alternative(transcript=text, confidence=0.9 if is_final else 0.0)],
                        is_final=is_final,
                        stability=1.0 if is_final else 0.5,
                    )],
                ))
            if is_final and session.options.single_utterance:
                break
            await asyncio.sleep(0)

        session.emit(AdapterResponse(type=ResponseType.STATUS, recording=False))

    async def recognize_file(
        self,
        payload: str,
        parameters: Optional[Dict[str, Any]],
        callback: FileCallback,
    ) -> None:
        try:
            options: FileRecognitionOptions = merge_options(self.file_defaults, parameters)
            content = base64.b64decode(payload, validate=True)
        except (OptionsError, binascii.Error) as e:
            callback(FileRecognitionResponse(success=False, error=e))
            return

        transcript = f"{self._phrase(len(content))} ({len(content)} bytes, {options.encoding} {options.sample_rate} Hz)"
        callback(FileRecognitionResponse(
            success=True,
            data=[RecognitionResult(
                alternatives=[Alternative(transcript=transcript, confidence=0.9)],
                is_final=True,
            )],
        ))
