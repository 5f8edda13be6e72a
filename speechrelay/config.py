"""Configuration loading for the relay server and capture client."""
from __future__ import annotations

import copy
import os
import sys
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli_w

APP_NAME = "speechrelay"
CONFIG_FILENAME = "config.toml"
CREDENTIALS_ENV = "GOOGLE_APPLICATION_CREDENTIALS"

DEFAULT_CONFIG: Dict[str, Any] = {
    "server": {
        "host": "0.0.0.0",
        "port": 8080,
    },
    "speech": {
        "backend": "google",
        "credentials_file": "",
    },
    "streaming": {
        "encoding": "LINEAR16",
        "sample_rate": 41000,
        "language_code": "en-US",
        "profanity_filter": True,
        "phrases": [],
        "interim_results": True,
        "single_utterance": False,
    },
    "file_recognition": {
        "encoding": "LINEAR16",
        "sample_rate": 16000,
        "language_code": "en-US",
    },
    "metadata": {
        "external_ip_url": (
            "http://metadata/computeMetadata/v1/"
            "instance/network-interfaces/0/access-configs/0/external-ip"
        ),
        "timeout": 2.0,
    },
    "client": {
        "server_url": "ws://localhost:8080",
        "input_device": "default",
        "buffer_size": 4096,
        "language_code": "en-US",
    },
}


def get_platform_config_dir() -> Path:
    """Return the per-user config directory for this platform."""
    if os.name == "nt":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / APP_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / APP_NAME


def _config_dirs() -> List[Path]:
    """Directories searched for config.toml, in priority order."""
    return [Path.cwd(), get_platform_config_dir()]


def _find_config_path() -> Optional[Path]:
    for directory in _config_dirs():
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def get_config_path() -> Optional[Path]:
    """Return the config file currently in effect, if any."""
    return _find_config_path()


def _merge_configs(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``overrides`` into a copy of ``base``."""
    result = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge_configs(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    path: Optional[Path] = None,
    quiet: bool = False,
    raise_on_error: bool = False,
) -> Dict[str, Any]:
    """Load config.toml merged over the defaults.

    Args:
        path: Explicit config file. Searched for when omitted.
        quiet: Suppress status output.
        raise_on_error: Re-raise parse errors instead of using defaults.
    """
    config_path = path or _find_config_path()
    if config_path is None:
        if not quiet:
            print("[INFO] No config.toml found, using defaults")
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(config_path, "rb") as f:
            user_config = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        if raise_on_error:
            raise
        if not quiet:
            print(f"[WARN] Failed to read {config_path}: {e}")
            print("[INFO] Using default configuration")
        return copy.deepcopy(DEFAULT_CONFIG)

    if not quiet:
        print(f"[OK] Loaded config from {config_path}")
    return _merge_configs(DEFAULT_CONFIG, user_config)


def save_config(path: Path, config: Dict[str, Any]) -> None:
    """Write config as TOML, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        tomli_w.dump(config, f)


def resolve_credentials_file(config: Dict[str, Any]) -> Optional[Path]:
    """Credentials file from config, falling back to the environment."""
    raw = config.get("speech", {}).get("credentials_file", "") or os.environ.get(CREDENTIALS_ENV, "")
    if not raw:
        return None
    return Path(raw).expanduser()
