"""Base contract for speech recognition backends."""
from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol

from ..options import StreamingOptions
from ..protocol import AdapterResponse, FileRecognitionResponse, ResponseType

StreamCallback = Callable[[AdapterResponse], None]
FileCallback = Callable[[FileRecognitionResponse], None]


class StreamingSession:
    """Handle for one open streaming call.

    Requests are queued by ``write`` and drained by the backend's call. The
    session stops delivering callbacks once it has been closed.
    """

    def __init__(self, options: StreamingOptions, callback: StreamCallback):
        self.options = options
        self.config_sent = False
        self.closed = False
        self.task: Optional[asyncio.Task] = None
        self._callback = callback
        self._requests: asyncio.Queue = asyncio.Queue()

    def put(self, request: Any) -> None:
        self._requests.put_nowait(request)

    def end(self) -> None:
        self._requests.put_nowait(None)

    async def requests(self) -> AsyncIterator[Any]:
        while True:
            request = await self._requests.get()
            if request is None:
                return
            yield request

    def emit(self, response: AdapterResponse) -> None:
        if not self.closed:
            self._callback(response)


class SpeechBackend(Protocol):
    """Protocol for cloud (or fake) speech recognizers used by the relay."""

    async def open_streaming_session(
        self,
        options: StreamingOptions,
        callback: StreamCallback,
    ) -> StreamingSession:
        """Open a streaming call and report readiness through ``callback``."""
        ...

    def write(self, session: StreamingSession, audio: bytes) -> None:
        """Queue an audio chunk, preceded once by the streaming config."""
        ...

    def close(self, session: StreamingSession) -> None:
        """End the streaming call if it is still open."""
        ...

    async def recognize_file(
        self,
        payload: str,
        parameters: Optional[Dict[str, Any]],
        callback: FileCallback,
    ) -> None:
        """Recognize a complete base64 audio payload in one call."""
        ...


class QueuedStreamingBackend:
    """Shared write/close handling for backends fed from a request queue."""

    def _config_request(self, options: StreamingOptions) -> Any:
        raise NotImplementedError

    def _audio_request(self, audio: bytes) -> Any:
        raise NotImplementedError

    def write(self, session: StreamingSession, audio: bytes) -> None:
        if session.closed:
            return
        if not session.config_sent:
            try:
                request = self._config_request(session.options)
            except Exception as e:
                print(f"[ERR] Invalid streaming config: {e!r}")
                session.emit(AdapterResponse(type=ResponseType.ERROR, recording=False, error=e))
                self.close(session)
                return
            session.put(request)
            session.config_sent = True
        session.put(self._audio_request(bytes(audio)))

    def close(self, session: StreamingSession) -> None:
        if session.closed:
            return
        session.closed = True
        session.end()
        if session.task is not None and not session.task.done():
            session.task.cancel()
