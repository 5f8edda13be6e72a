"""Backend factory for the speech recognition adapter."""
from typing import Any, Dict

from ..config import resolve_credentials_file
from ..options import FileRecognitionOptions
from .base import SpeechBackend, StreamingSession


def create_speech_backend(config: Dict[str, Any]) -> SpeechBackend:
    """Factory function to create the configured speech backend.

    Args:
        config: Configuration dictionary with a ``speech`` section

    Returns:
        SpeechBackend instance

    Raises:
        ValueError: If the backend is unknown or its dependencies are missing
    """
    backend = config.get("speech", {}).get("backend", "google")
    file_defaults = FileRecognitionOptions.from_config(config)

    if backend == "google":
        try:
            from .google_speech import GoogleSpeechBackend
        except ImportError as e:
            raise ValueError(
                f"google backend requires google-cloud-speech. "
                f"Install with: pip install google-cloud-speech\n"
                f"Error: {e}"
            )
        return GoogleSpeechBackend(
            credentials_file=resolve_credentials_file(config),
            file_defaults=file_defaults,
        )

    elif backend == "mock":
        from .mock import MockSpeechBackend
        return MockSpeechBackend(file_defaults=file_defaults)

    else:
        raise ValueError(
            f"Unknown backend: {backend}. "
            f"Valid options: 'google', 'mock'"
        )


__all__ = ["SpeechBackend", "StreamingSession", "create_speech_backend"]
