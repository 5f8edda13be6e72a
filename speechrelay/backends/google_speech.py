"""Google Cloud Speech-to-Text backend (gRPC, async client)."""
from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from typing import Any, Dict, List, Optional

import google.auth
from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import speech

from ..options import FileRecognitionOptions, RecognitionConfig, StreamingOptions, merge_options, phrase_list
from ..protocol import (
    AdapterResponse,
    Alternative,
    FileRecognitionResponse,
    RecognitionResult,
    ResponseType,
)
from .base import FileCallback, QueuedStreamingBackend, StreamCallback, StreamingSession

SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]

# Failures that end a request; reported to the caller, never retried.
PROVIDER_ERRORS = (GoogleAuthError, GoogleAPIError, OSError, ValueError)


def _convert_result(result: Any, is_final: bool) -> RecognitionResult:
    return RecognitionResult(
        alternatives=[
            Alternative(transcript=alt.transcript, confidence=alt.confidence)
            for alt in result.alternatives
        ],
        is_final=is_final,
        stability=getattr(result, "stability", 0.0),
    )


class GoogleSpeechBackend(QueuedStreamingBackend):
    """Relays audio to Cloud Speech-to-Text.

    A new authenticated client is built for every streaming session and every
    file request, so credential problems surface on the request that hit
    them.
    """

    def __init__(
        self,
        credentials_file: Optional[Path] = None,
        file_defaults: Optional[FileRecognitionOptions] = None,
    ):
        self.credentials_file = credentials_file
        self.file_defaults = file_defaults or FileRecognitionOptions()

    def _create_client(self) -> speech.SpeechAsyncClient:
        if self.credentials_file:
            credentials, _ = google.auth.load_credentials_from_file(
                str(self.credentials_file), scopes=SCOPES
            )
        else:
            credentials, _ = google.auth.default(scopes=SCOPES)
        return speech.SpeechAsyncClient(credentials=credentials)

    @staticmethod
    def _recognition_config(
        encoding: str,
        sample_rate: int,
        language_code: str,
        **extra: Any,
    ) -> speech.RecognitionConfig:
        return speech.RecognitionConfig(
            encoding=speech.RecognitionConfig.AudioEncoding[encoding],
            sample_rate_hertz=sample_rate,
            language_code=language_code,
            **extra,
        )

    def _streaming_config(self, options: StreamingOptions) -> speech.StreamingRecognitionConfig:
        cfg: RecognitionConfig = options.config
        phrases = phrase_list(options)
        contexts = [speech.SpeechContext(phrases=phrases)] if phrases else []
        return speech.StreamingRecognitionConfig(
            config=self._recognition_config(
                cfg.encoding,
                cfg.sample_rate,
                cfg.language_code,
                profanity_filter=cfg.profanity_filter,
                speech_contexts=contexts,
            ),
            interim_results=options.interim_results,
            single_utterance=options.single_utterance,
        )

    def _config_request(self, options: StreamingOptions) -> speech.StreamingRecognizeRequest:
        return speech.StreamingRecognizeRequest(streaming_config=self._streaming_config(options))

    def _audio_request(self, audio: bytes) -> speech.StreamingRecognizeRequest:
        return speech.StreamingRecognizeRequest(audio_content=audio)

    # --- Streaming ---

    async def open_streaming_session(
        self,
        options: StreamingOptions,
        callback: StreamCallback,
    ) -> StreamingSession:
        session = StreamingSession(options, callback)
        try:
            # Credential discovery may block on files or the metadata server.
            client = await asyncio.to_thread(self._create_client)
        except PROVIDER_ERRORS as e:
            print(f"[ERR] Speech client unavailable: {e}")
            session.emit(AdapterResponse(type=ResponseType.ERROR, recording=False, error=e))
            session.closed = True
            return session
        except Exception as e:
            print(f"[ERR] Unexpected speech client failure: {e!r}")
            session.emit(AdapterResponse(type=ResponseType.ERROR, recording=False, error=e))
            session.closed = True
            return session

        session.task = asyncio.create_task(self._consume(client, session))
        session.emit(AdapterResponse(type=ResponseType.STATUS, recording=True))
        return session

    async def _consume(self, client: speech.SpeechAsyncClient, session: StreamingSession) -> None:
        try:
            responses = await client.streaming_recognize(requests=session.requests())
            async for response in responses:
                self._dispatch(response, session)
        except PROVIDER_ERRORS as e:
            print(f"[ERR] Streaming recognition failed: {e}")
            session.emit(AdapterResponse(type=ResponseType.ERROR, recording=False, error=e))
            return
        except Exception as e:
            print(f"[ERR] Unexpected streaming failure: {e!r}")
            session.emit(AdapterResponse(type=ResponseType.ERROR, recording=False, error=e))
            return
        session.emit(AdapterResponse(type=ResponseType.STATUS, recording=False))

    def _dispatch(self, response: Any, session: StreamingSession) -> None:
        if response.error.code:
            session.emit(AdapterResponse(
                type=ResponseType.ERROR,
                recording=False,
                error={"code": str(response.error.code), "message": response.error.message},
            ))
            return
        if response.results:
            session.emit(AdapterResponse(
                type=ResponseType.DATA,
                recording=True,
                data=[_convert_result(r, r.is_final) for r in response.results],
            ))

    # --- One-shot ---

    async def recognize_file(
        self,
        payload: str,
        parameters: Optional[Dict[str, Any]],
        callback: FileCallback,
    ) -> None:
        try:
            options: FileRecognitionOptions = merge_options(self.file_defaults, parameters)
            content = base64.b64decode(payload, validate=True)
            client = await asyncio.to_thread(self._create_client)
            response = await client.recognize(
                config=self._recognition_config(
                    options.encoding,
                    options.sample_rate,
                    options.language_code,
                ),
                audio=speech.RecognitionAudio(content=content),
            )
        except PROVIDER_ERRORS as e:
            print(f"[ERR] File recognition failed: {e}")
            callback(FileRecognitionResponse(success=False, error=e))
            return
        except Exception as e:
            print(f"[ERR] Unexpected file recognition failure: {e!r}")
            callback(FileRecognitionResponse(success=False, error=e))
            return

        results: List[RecognitionResult] = [
            _convert_result(r, is_final=True) for r in response.results
        ]
        callback(FileRecognitionResponse(success=True, data=results))
