"""Typed recognition options and the allow-list merge of client overrides.

Clients send camelCase JSON objects. Only keys declared in a dataclass's
``WIRE_KEYS`` schema are applied; anything else is ignored. Grouped
sub-options (``config``) are merged one level deep.
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

ENCODINGS = (
    "LINEAR16",
    "FLAC",
    "MULAW",
    "AMR",
    "AMR_WB",
    "OGG_OPUS",
    "SPEEX_WITH_HEADER_BYTE",
    "WEBM_OPUS",
)


class OptionsError(ValueError):
    """A recognized option carried a value of the wrong type."""


def _as_bool(key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise OptionsError(f"'{key}' must be a boolean")
    return value


def _as_sample_rate(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise OptionsError(f"'{key}' must be a number")
    if value <= 0 or int(value) != value:
        raise OptionsError(f"'{key}' must be a positive integer")
    return int(value)


def _as_language(key: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise OptionsError(f"'{key}' must be a non-empty string")
    return value.strip()


def _as_encoding(key: str, value: Any) -> str:
    if not isinstance(value, str) or value.upper() not in ENCODINGS:
        raise OptionsError(f"'{key}' must be one of: {', '.join(ENCODINGS)}")
    return value.upper()


@dataclass(frozen=True)
class SpeechContext:
    """Phrase hints passed to the recognizer."""

    phrases: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"phrases": list(self.phrases)}


def _as_speech_context(key: str, value: Any) -> Optional[SpeechContext]:
    if value is None:
        return None
    if isinstance(value, Mapping):
        value = value.get("phrases", [])
    if not isinstance(value, (list, tuple)) or not all(isinstance(p, str) for p in value):
        raise OptionsError(f"'{key}' must be a list of phrases")
    return SpeechContext(phrases=tuple(value))


@dataclass(frozen=True)
class RecognitionConfig:
    encoding: str = "LINEAR16"
    sample_rate: int = 41000
    language_code: str = "en-US"
    profanity_filter: bool = True
    speech_context: Optional[SpeechContext] = None

    WIRE_KEYS = {
        "encoding": ("encoding", _as_encoding),
        "sampleRate": ("sample_rate", _as_sample_rate),
        "languageCode": ("language_code", _as_language),
        "profanityFilter": ("profanity_filter", _as_bool),
        "speechContext": ("speech_context", _as_speech_context),
    }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encoding": self.encoding,
            "sampleRate": self.sample_rate,
            "languageCode": self.language_code,
            "profanityFilter": self.profanity_filter,
            "speechContext": self.speech_context.to_dict() if self.speech_context else None,
        }


@dataclass(frozen=True)
class StreamingOptions:
    config: RecognitionConfig = field(default_factory=RecognitionConfig)
    interim_results: bool = True
    single_utterance: bool = False

    WIRE_KEYS = {
        "config": ("config", None),
        "interimResults": ("interim_results", _as_bool),
        "singleUtterance": ("single_utterance", _as_bool),
    }

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "StreamingOptions":
        section = config.get("streaming", {})
        recognition = _wire_overrides(section, {
            "encoding": "encoding",
            "sample_rate": "sampleRate",
            "language_code": "languageCode",
            "profanity_filter": "profanityFilter",
        })
        if section.get("phrases"):
            recognition["speechContext"] = section["phrases"]
        overrides = _wire_overrides(section, {
            "interim_results": "interimResults",
            "single_utterance": "singleUtterance",
        })
        overrides["config"] = recognition
        return _merge_section("streaming", cls(), overrides)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "interimResults": self.interim_results,
            "singleUtterance": self.single_utterance,
        }


@dataclass(frozen=True)
class FileRecognitionOptions:
    # Phrase hints are not carried on the one-shot path.
    encoding: str = "LINEAR16"
    sample_rate: int = 16000
    language_code: str = "en-US"

    WIRE_KEYS = {
        "encoding": ("encoding", _as_encoding),
        "sampleRate": ("sample_rate", _as_sample_rate),
        "languageCode": ("language_code", _as_language),
    }

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "FileRecognitionOptions":
        section = config.get("file_recognition", {})
        overrides = _wire_overrides(section, {
            "encoding": "encoding",
            "sample_rate": "sampleRate",
            "language_code": "languageCode",
        })
        return _merge_section("file_recognition", cls(), overrides)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encoding": self.encoding,
            "sampleRate": self.sample_rate,
            "languageCode": self.language_code,
        }


def _overlay(target, overrides: Mapping[str, Any], depth: int):
    schema: Dict[str, Tuple[str, Optional[Callable[[str, Any], Any]]]] = type(target).WIRE_KEYS
    changes: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in schema:
            continue
        attr, convert = schema[key]
        current = getattr(target, attr)
        if dataclasses.is_dataclass(current) and hasattr(type(current), "WIRE_KEYS"):
            if depth > 0 or not isinstance(value, Mapping):
                raise OptionsError(f"'{key}' must be an object")
            changes[attr] = _overlay(current, value, depth + 1)
        else:
            changes[attr] = convert(key, value)
    return dataclasses.replace(target, **changes) if changes else target


def merge_options(defaults, overrides: Optional[Mapping[str, Any]]):
    """Overlay recognized client keys onto ``defaults``.

    Returns a new options value; ``defaults`` is left untouched. Unknown keys
    are ignored, recognized keys with invalid values raise ``OptionsError``.
    """
    if overrides is None:
        return defaults
    if not isinstance(overrides, Mapping):
        raise OptionsError("Options must be a JSON object")
    return _overlay(defaults, overrides, depth=0)


def _wire_overrides(section: Mapping[str, Any], names: Dict[str, str]) -> Dict[str, Any]:
    """Rename config.toml keys present in ``section`` to their wire names."""
    return {wire: section[key] for key, wire in names.items() if key in section}


def _merge_section(name: str, defaults, overrides: Dict[str, Any]):
    # Config values go through the same validation as client overrides.
    try:
        return merge_options(defaults, overrides)
    except OptionsError as e:
        raise OptionsError(f"Invalid [{name}] config: {e}") from e


def phrase_list(options: StreamingOptions) -> List[str]:
    context = options.config.speech_context
    return list(context.phrases) if context else []
