"""Capture client: streams microphone audio to the relay and receives results."""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import sounddevice as sd
import websockets
from websockets.exceptions import ConnectionClosed

from .audio import file_request_from_data_url, pcm_bytes, read_data_url
from .protocol import (
    ProtocolError,
    RecogniseFile,
    RecordingAction,
    RecordingControl,
    RecordingData,
    RecordingError,
    RecordingStatusChange,
    ServerMessage,
    parse_server_message,
)

DEFAULT_BUFFER_SIZE = 4096


class CaptureError(RuntimeError):
    """The microphone could not be opened."""


class RelayClient:
    """Client side of the relay channel.

    Audio is only sent after the server has acknowledged that recording
    started; the capture stream is released once it reports recording
    stopped.
    """

    def __init__(
        self,
        server_url: str,
        on_status_change: Optional[Callable[[RecordingStatusChange], None]] = None,
        on_data: Optional[Callable[[RecordingData], None]] = None,
        on_error: Optional[Callable[[RecordingError], None]] = None,
        input_device: str = "default",
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        language_code: str = "en-US",
    ):
        self.server_url = server_url
        self.on_status_change = on_status_change
        self.on_data = on_data
        self.on_error = on_error
        self.input_device = None if input_device == "default" else input_device
        self.buffer_size = buffer_size
        self.language_code = language_code
        self.is_recording = False
        self.sample_rate: Optional[int] = None
        self.stream: Optional[sd.InputStream] = None
        self.stopped = asyncio.Event()
        self._websocket = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._audio_queue: asyncio.Queue = asyncio.Queue()
        self._audio_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any], **callbacks: Any) -> "RelayClient":
        section = config.get("client", {})
        return cls(
            server_url=section.get("server_url", "ws://localhost:8080"),
            input_device=section.get("input_device", "default"),
            buffer_size=section.get("buffer_size", DEFAULT_BUFFER_SIZE),
            language_code=section.get("language_code", "en-US"),
            **callbacks,
        )

    # --- Channel ---

    async def connect(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._websocket = await websockets.connect(self.server_url)
        self._audio_task = asyncio.create_task(self._pump_audio())
        print(f"[OK] Connected to {self.server_url}")

    async def _send(self, data: Union[str, bytes]) -> None:
        if self._websocket is None:
            raise RuntimeError("Not connected; call connect() first")
        await self._websocket.send(data)

    async def _pump_audio(self) -> None:
        while True:
            data = await self._audio_queue.get()
            try:
                await self._send(data)
            except ConnectionClosed:
                return

    async def listen(self) -> None:
        """Dispatch server messages until the connection closes."""
        try:
            async for raw in self._websocket:
                try:
                    message = parse_server_message(raw)
                except ProtocolError as e:
                    print(f"[WARN] Ignoring server message: {e}")
                    continue
                self.dispatch(message)
        except ConnectionClosed:
            pass
        finally:
            self._close_stream()

    def dispatch(self, message: ServerMessage) -> None:
        if isinstance(message, RecordingStatusChange):
            self.is_recording = message.recording is True
            if self.is_recording:
                self.stopped.clear()
            else:
                self._close_stream()
                self.stopped.set()
            if self.on_status_change:
                self.on_status_change(message)
        elif isinstance(message, RecordingData):
            if self.on_data:
                self.on_data(message)
        elif isinstance(message, RecordingError):
            if message.recording is False and self.is_recording:
                self.is_recording = False
                self._close_stream()
                self.stopped.set()
            if self.on_error:
                self.on_error(message)

    # --- Capture ---

    def _audio_callback(self, indata, frames, time, status) -> None:
        """PortAudio thread: hand converted blocks to the event loop."""
        if not self.is_recording or self._loop is None:
            return
        data = pcm_bytes(indata[:, 0] if indata.ndim > 1 else indata)
        self._loop.call_soon_threadsafe(self._audio_queue.put_nowait, data)

    def _open_stream(self) -> sd.InputStream:
        stream = sd.InputStream(
            samplerate=None,
            blocksize=self.buffer_size,
            channels=1,
            dtype="float32",
            callback=self._audio_callback,
            device=self.input_device,
        )
        try:
            stream.start()
        except sd.PortAudioError:
            stream.close()
            raise
        return stream

    def _close_stream(self) -> None:
        stream, self.stream = self.stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError:
            pass

    async def start(self, phrases: Optional[List[str]] = None) -> None:
        """Open the microphone and ask the server to start recording.

        Raises:
            CaptureError: If no usable input device could be opened.
        """
        try:
            self.stream = self._open_stream()
        except sd.PortAudioError as e:
            print(f"[ERR] Could not open microphone: {e}")
            print(f"[INFO] Available devices:\n{sd.query_devices()}")
            raise CaptureError(str(e)) from e

        self.sample_rate = int(self.stream.samplerate)
        config: Dict[str, Any] = {"sampleRate": self.sample_rate}
        if phrases:
            config["speechContext"] = {"phrases": list(phrases)}

        print(f"[REC] Recording at {self.sample_rate} Hz...")
        await self._send(RecordingControl(action=RecordingAction.START, options={"config": config}).to_json())

    async def stop(self) -> None:
        """Ask the server to stop; capture is released on acknowledgement."""
        await self._send(RecordingControl(action=RecordingAction.STOP).to_json())

    # --- Files ---

    async def process_file(self, path: Union[str, Path], sample_rate: int = 16000) -> Dict[str, Any]:
        """Submit a whole audio file for one-shot recognition."""
        data_url = read_data_url(path)
        payload, parameters = file_request_from_data_url(
            data_url,
            sample_rate=sample_rate,
            language_code=self.language_code,
        )
        await self._send(RecogniseFile(audio=payload, parameters=parameters).to_json())
        return parameters

    async def close(self) -> None:
        self.is_recording = False
        self._close_stream()
        if self._audio_task is not None:
            self._audio_task.cancel()
        if self._websocket is not None:
            await self._websocket.close()
            self._websocket = None

