"""WebSocket relay between capture clients and a speech backend.

Each connection owns a ``ConnectionSession`` (recording flag, open streaming
handle, outbound queue). Frames from the client are handled strictly in
arrival order; backend callbacks push replies onto the outbound queue, which
a per-connection sender task drains.
"""
from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Dict, Optional, Set, Union
from urllib.parse import urlsplit

import websockets
from websockets.exceptions import ConnectionClosed

from .backends import SpeechBackend, StreamingSession, create_speech_backend
from .metadata import get_external_ip
from .options import OptionsError, StreamingOptions, merge_options
from .protocol import (
    AdapterResponse,
    AudioChunk,
    ClientMessage,
    FileRecognitionResponse,
    ProtocolError,
    RecogniseFile,
    RecordingAction,
    RecordingControl,
    RecordingData,
    RecordingError,
    RecordingStatusChange,
    ResponseType,
    ServerMessage,
    describe_error,
    parse_client_message,
)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080


@dataclass
class ConnectionSession:
    """Mutable state owned by exactly one client connection."""

    recording: bool = False
    stream: Optional[StreamingSession] = None
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    file_tasks: Set[asyncio.Task] = field(default_factory=set)


class RelayConnection:
    """Routes one client's messages to the speech backend and back."""

    def __init__(
        self,
        backend: SpeechBackend,
        streaming_defaults: StreamingOptions,
        peer: Any = None,
    ):
        self.backend = backend
        self.streaming_defaults = streaming_defaults
        self.peer = peer
        self.session = ConnectionSession()

    def _send(self, message: ServerMessage) -> None:
        self.session.outbox.put_nowait(message)

    async def handle_frame(self, raw: Union[str, bytes]) -> None:
        try:
            message = parse_client_message(raw)
        except ProtocolError as e:
            self._send(RecordingError(
                recording=self.session.recording,
                error={"code": "protocol_error", "message": str(e)},
            ))
            return
        await self.handle(message)

    async def handle(self, message: ClientMessage) -> None:
        if isinstance(message, AudioChunk):
            self.on_audio(message.data)
        elif isinstance(message, RecordingControl):
            if message.action is RecordingAction.START:
                await self.start(message.options)
            else:
                self.stop()
        elif isinstance(message, RecogniseFile):
            self.recognise_file(message.audio, message.parameters)

    # --- Streaming ---

    async def start(self, options: Optional[Dict[str, Any]] = None) -> None:
        try:
            merged = merge_options(self.streaming_defaults, options)
        except OptionsError as e:
            self._send(RecordingError(recording=False, error={"code": "invalid_options", "message": str(e)}))
            return

        # A second start replaces the running stream.
        self._close_stream()
        self.session.recording = False
        print(f"[REC] Starting stream for {self.peer} at {merged.config.sample_rate} Hz")
        try:
            self.session.stream = await self.backend.open_streaming_session(merged, self._on_stream_response)
        except Exception as e:
            print(f"[ERR] Could not open stream for {self.peer}: {e!r}")
            self.session.recording = False
            self._send(RecordingError(recording=False, error=e))

    def _on_stream_response(self, response: AdapterResponse) -> None:
        self.session.recording = response.recording

        if response.type is ResponseType.DATA:
            self._send(RecordingData(recording=response.recording, data=response.data, error=response.error))
        elif response.type is ResponseType.STATUS:
            self._send(RecordingStatusChange(recording=response.recording, error=response.error))
        elif response.type is ResponseType.ERROR:
            print(f"[ERR] Stream error for {self.peer}: {describe_error(response.error)}")
            self._send(RecordingError(recording=response.recording, error=response.error))

    def on_audio(self, data: bytes) -> None:
        # Audio outside an active recording is dropped.
        if not self.session.recording or self.session.stream is None:
            return
        self.backend.write(self.session.stream, data)

    def _close_stream(self) -> None:
        stream = self.session.stream
        self.session.stream = None
        if stream is not None:
            self.backend.close(stream)

    def stop(self) -> None:
        self._close_stream()
        self.session.recording = False
        print(f"[INFO] Stopped stream for {self.peer}")
        self._send(RecordingStatusChange(recording=False))

    # --- One-shot ---

    def recognise_file(self, audio: str, parameters: Optional[Dict[str, Any]]) -> asyncio.Task:
        task = asyncio.create_task(self._recognise(audio, parameters))
        self.session.file_tasks.add(task)
        task.add_done_callback(self.session.file_tasks.discard)
        return task

    async def _recognise(self, audio: str, parameters: Optional[Dict[str, Any]]) -> None:
        try:
            await self.backend.recognize_file(audio, parameters, self._on_file_response)
        except Exception as e:
            print(f"[ERR] File recognition failed for {self.peer}: {e!r}")
            self._on_file_response(FileRecognitionResponse(success=False, error=e))

    def _on_file_response(self, response: FileRecognitionResponse) -> None:
        if response.success:
            self._send(RecordingData(recording=self.session.recording, data=response.data, error=response.error))
        else:
            self._send(RecordingError(recording=self.session.recording, error=response.error))

    def disconnect(self) -> None:
        """Tear down after the client went away, as an implicit stop."""
        self._close_stream()
        self.session.recording = False
        for task in list(self.session.file_tasks):
            task.cancel()


class RelayServer:
    """WebSocket relay server with a root HTTP endpoint on the same port."""

    def __init__(
        self,
        config: Dict[str, Any],
        backend: Optional[SpeechBackend] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ):
        self.config = config
        server_config = config.get("server", {})
        self.host = host or server_config.get("host", DEFAULT_HOST)
        self.port = port or server_config.get("port", DEFAULT_PORT)
        self.backend = backend or create_speech_backend(config)
        self.streaming_defaults = StreamingOptions.from_config(config)
        self.connections: Set[RelayConnection] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._server = None

    # --- HTTP ---

    async def _process_request(self, connection, request):
        """Answer plain HTTP requests; let WebSocket upgrades through.

        Every response allows any origin, which covers simple cross-origin
        GETs. CORS preflight (OPTIONS with Access-Control-Request-*) is not
        answered; the websockets HTTP layer only accepts GET.
        """
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None

        if urlsplit(request.path).path == "/":
            metadata = self.config.get("metadata", {})
            external_ip = await get_external_ip(
                metadata.get("external_ip_url", ""),
                timeout=metadata.get("timeout", 2.0),
            )
            response = connection.respond(HTTPStatus.OK, external_ip)
        else:
            response = connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        response.headers["Access-Control-Allow-Origin"] = "*"
        return response

    # --- WebSocket ---

    @staticmethod
    async def _pump_outbox(websocket, session: ConnectionSession) -> None:
        while True:
            message = await session.outbox.get()
            try:
                await websocket.send(message.to_json())
            except ConnectionClosed:
                return

    async def _handler(self, websocket) -> None:
        """Handle a single WebSocket connection."""
        connection = RelayConnection(
            self.backend,
            self.streaming_defaults,
            peer=websocket.remote_address,
        )
        self.connections.add(connection)
        print(f"[INFO] Client connected from {websocket.remote_address}")
        sender = asyncio.create_task(self._pump_outbox(websocket, connection.session))

        try:
            async for raw in websocket:
                await connection.handle_frame(raw)
        except ConnectionClosed:
            pass
        finally:
            connection.disconnect()
            sender.cancel()
            self.connections.discard(connection)
            print(f"[INFO] Client disconnected from {websocket.remote_address}")

    # --- Server lifecycle ---

    async def _start_ws(self) -> int:
        """Start the WebSocket server. Returns the bound port."""
        try:
            self._server = await websockets.serve(
                self._handler,
                self.host,
                self.port,
                process_request=self._process_request,
            )
        except OSError as e:
            raise RuntimeError(f"Could not bind to {self.host}:{self.port}: {e}")
        return self.port

    def _request_shutdown(self) -> None:
        """Schedule graceful shutdown."""
        if self._loop:
            self._loop.call_soon_threadsafe(self._loop.stop)

    def run(self) -> None:
        """Start the server (blocking)."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        self._loop.run_until_complete(self._start_ws())
        print(f"[OK] Websocket server listening on ws://{self.host}:{self.port}")

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._loop.add_signal_handler(sig, self._request_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler.
                signal.signal(sig, lambda *_: self._request_shutdown())

        try:
            self._loop.run_forever()
        finally:
            self._cleanup()

    def _cleanup(self) -> None:
        """Close open streams and the listening socket."""
        print("\n[INFO] Shutting down server...")

        for connection in list(self.connections):
            connection.disconnect()
        if self._server and self._loop and not self._loop.is_closed():
            self._server.close()
            self._loop.run_until_complete(self._server.wait_closed())
        if self._loop and not self._loop.is_closed():
            self._loop.close()

        print("[OK] Server stopped")
