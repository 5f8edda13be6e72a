"""PCM conversion and audio file payload helpers."""
import base64
import mimetypes
from pathlib import Path
from typing import Any, Dict, Tuple, Union

import numpy as np

INT16_SCALE = 0x7FFF
DEFAULT_FILE_ENCODING = "LINEAR16"
LOSSLESS_ENCODING = "FLAC"

# Not registered by default on every platform.
mimetypes.add_type("audio/flac", ".flac")
mimetypes.add_type("audio/wav", ".wav")


def float32_to_int16(buffer: np.ndarray) -> np.ndarray:
    """Convert float samples in [-1, 1] to signed 16-bit PCM."""
    samples = np.asarray(buffer, dtype=np.float32)
    clipped = np.clip(samples, -1.0, 1.0)
    return np.rint(clipped * INT16_SCALE).astype(np.int16)


def pcm_bytes(buffer: np.ndarray) -> bytes:
    """Mono float block -> little-endian int16 bytes for the wire."""
    return float32_to_int16(np.ravel(buffer)).astype("<i2").tobytes()


def read_data_url(path: Union[str, Path]) -> str:
    """Read a file as a ``data:<mime>;base64,<payload>`` URL."""
    path = Path(path)
    mime_type, _ = mimetypes.guess_type(path.name)
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime_type or 'application/octet-stream'};base64,{encoded}"


def mime_subtype(data_url: str) -> str:
    """Return the subtype of an ``audio/*`` data URL, or an empty string."""
    start = data_url.find("audio/")
    end = data_url.find(";")
    if start == -1 or end == -1 or end < start:
        return ""
    return data_url[start + len("audio/"):end]


def file_request_from_data_url(
    data_url: str,
    sample_rate: int = 16000,
    language_code: str = "en-US",
) -> Tuple[str, Dict[str, Any]]:
    """Split a data URL into the base64 payload and recognition parameters."""
    parameters: Dict[str, Any] = {
        "languageCode": language_code,
        "encoding": DEFAULT_FILE_ENCODING,
        "sampleRate": sample_rate,
    }
    if mime_subtype(data_url).lower() == "flac":
        parameters["encoding"] = LOSSLESS_ENCODING

    payload = data_url[data_url.find(",") + 1:]
    return payload, parameters
