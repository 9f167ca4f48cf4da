"""
Centralized configuration loader and accessors for Parley.

Loads YAML from `config/config.yaml` (or the file named by $PARLEY_CONFIG) and
provides typed getters aligned with the documented schema (audio.*, encoder.*,
turn.*, transport.*, playback.*). `load_settings()` assembles the dataclasses
the engine components take.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import yaml

from .error_handler import ConfigurationError


_DEFAULT_CONFIG_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "config", "config.yaml"))
_CONFIG_PATH = os.environ.get("PARLEY_CONFIG", _DEFAULT_CONFIG_PATH)
_CFG: Dict[str, Any] = {}
_LOADED = False

_BOOL_TRUE_VALUES = frozenset({"true", "1", "yes", "y", "on"})
_BOOL_FALSE_VALUES = frozenset({"false", "0", "no", "n", "off"})

VALID_ENCODINGS = ("pcm16", "flac", "ogg")
VALID_STRATEGIES = ("local", "server")
VALID_TRANSPORTS = ("websocket", "polling")
STANDARD_SAMPLE_RATES = (8000, 16000, 22050, 24000, 44100, 48000)


def _load() -> None:
    global _CFG, _LOADED
    if _LOADED:
        return
    if os.path.exists(_CONFIG_PATH):
        with open(_CONFIG_PATH, "r") as f:
            _CFG = yaml.safe_load(f) or {}
    else:
        _CFG = {}

    _validate_config(_CFG)
    _LOADED = True


def _validate_config(config: Dict[str, Any]) -> None:
    """Validate configuration values and provide helpful error messages"""
    errors = []
    warnings = []

    audio = config.get("audio") or {}
    if isinstance(audio, dict):
        if "sample_rate" in audio:
            sr = audio["sample_rate"]
            if not isinstance(sr, (int, float)) or sr <= 0:
                errors.append("audio.sample_rate must be a positive number")
            elif sr not in STANDARD_SAMPLE_RATES:
                warnings.append(f"audio.sample_rate should be a standard rate {STANDARD_SAMPLE_RATES}")
        if "channels" in audio:
            ch = audio["channels"]
            if not isinstance(ch, int) or ch not in (1, 2):
                errors.append("audio.channels must be 1 or 2")
        if "block_ms" in audio:
            block = audio["block_ms"]
            if not isinstance(block, (int, float)) or block <= 0 or block > 500:
                errors.append("audio.block_ms must be in (0, 500]")

    encoder = config.get("encoder") or {}
    if isinstance(encoder, dict):
        if "encoding" in encoder and encoder["encoding"] not in VALID_ENCODINGS:
            errors.append(f"encoder.encoding must be one of {VALID_ENCODINGS}")
        if "chunk_interval_ms" in encoder:
            interval = encoder["chunk_interval_ms"]
            if not isinstance(interval, (int, float)) or interval <= 0:
                errors.append("encoder.chunk_interval_ms must be a positive number")
            elif interval > 2000:
                warnings.append("encoder.chunk_interval_ms above 2000 adds noticeable latency")

    turn = config.get("turn") or {}
    if isinstance(turn, dict):
        if "strategy" in turn and turn["strategy"] not in VALID_STRATEGIES:
            errors.append(f"turn.strategy must be one of {VALID_STRATEGIES}")
        for key in ("positive_threshold", "negative_threshold"):
            if key in turn:
                val = turn[key]
                if not isinstance(val, (int, float)) or val < 0 or val > 1:
                    errors.append(f"turn.{key} must be between 0 and 1")
        pos = turn.get("positive_threshold")
        neg = turn.get("negative_threshold")
        if isinstance(pos, (int, float)) and isinstance(neg, (int, float)) and neg > pos:
            errors.append("turn.negative_threshold must not exceed turn.positive_threshold")
        for key in ("silence_threshold_ms", "min_speech_ms"):
            if key in turn:
                val = turn[key]
                if not isinstance(val, (int, float)) or val < 0:
                    errors.append(f"turn.{key} must be a non-negative number")
        if "confirm_frames" in turn:
            val = turn["confirm_frames"]
            if not isinstance(val, int) or val < 1:
                errors.append("turn.confirm_frames must be a positive integer")

    transport = config.get("transport") or {}
    if isinstance(transport, dict):
        if "kind" in transport and transport["kind"] not in VALID_TRANSPORTS:
            errors.append(f"transport.kind must be one of {VALID_TRANSPORTS}")
        if "url" in transport and not _is_valid_url(transport["url"], ("ws", "wss")):
            errors.append("transport.url must be a ws:// or wss:// URL")
        if "api_url" in transport and not _is_valid_url(transport["api_url"], ("http", "https")):
            errors.append("transport.api_url must be an http:// or https:// URL")
        for key in ("max_retries", "reconnect_attempts"):
            if key in transport:
                val = transport[key]
                if not isinstance(val, int) or val < 0:
                    errors.append(f"transport.{key} must be a non-negative integer")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors)
        raise ConfigurationError(error_msg, component="config", operation="validate")

    if warnings:
        for warning in warnings:
            print(f"Config warning: {warning}")


def _is_valid_url(url: Any, schemes: tuple) -> bool:
    """Validate scheme://host[:port][/path] format"""
    if not isinstance(url, str):
        return False
    pattern = r'^(%s)://[A-Za-z0-9\-\.]+(:\d{1,5})?(/.*)?$' % "|".join(schemes)
    return bool(re.match(pattern, url))


def get(path: str, default: Any = None) -> Any:
    """Dot-path getter from loaded config.

    Example: get("turn.silence_threshold_ms", 2500)
    """
    _load()
    cur: Any = _CFG
    for part in path.split("."):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return default
    return cur


def get_typed(path: str, default: Any, cast_type: type) -> Any:
    """Get a configuration value with type casting and default fallback.

    Args:
        path: Dot-separated configuration path
        default: Default value if path not found or casting fails
        cast_type: Type to cast the value to

    Returns:
        The cast value or default
    """
    val = get(path, default)

    if cast_type is bool:
        if isinstance(val, bool):
            return val
        if isinstance(val, str):
            normalized = val.strip().lower()
            if normalized in _BOOL_TRUE_VALUES:
                return True
            if normalized in _BOOL_FALSE_VALUES:
                return False
            return default
        try:
            return bool(val)
        except (TypeError, ValueError):
            return default

    if isinstance(val, cast_type):
        return val

    try:
        return cast_type(val)
    except (TypeError, ValueError):
        return default


# Audio capture
def get_sample_rate() -> int:
    return get_typed("audio.sample_rate", 24000, int)

def get_channels() -> int:
    return get_typed("audio.channels", 1, int)

def get_block_ms() -> float:
    return get_typed("audio.block_ms", 20.0, float)

def get_input_device() -> Optional[Union[int, str]]:
    """Return configured input device (int index or str name) or None."""
    return get("audio.input_device", None)


# Encoder
def get_encoding() -> str:
    return str(get("encoder.encoding", "pcm16"))

def get_chunk_interval_ms() -> float:
    return get_typed("encoder.chunk_interval_ms", 200.0, float)


# Turn detection
def get_turn_strategy() -> str:
    return str(get("turn.strategy", "local"))

def get_positive_threshold() -> float:
    return get_typed("turn.positive_threshold", 0.5, float)

def get_negative_threshold() -> float:
    return get_typed("turn.negative_threshold", 0.35, float)

def get_confirm_frames() -> int:
    return get_typed("turn.confirm_frames", 3, int)

def get_silence_threshold_ms() -> float:
    return get_typed("turn.silence_threshold_ms", 2500.0, float)

def get_min_speech_ms() -> float:
    return get_typed("turn.min_speech_ms", 500.0, float)

def get_energy_floor() -> float:
    return get_typed("turn.energy_floor", 0.005, float)

def get_energy_ceiling() -> float:
    return get_typed("turn.energy_ceiling", 0.05, float)


# Transport
def get_transport_kind() -> str:
    return str(get("transport.kind", "websocket"))

def get_transport_url() -> str:
    return str(get("transport.url", "ws://localhost:3001/realtime-ws"))

def get_api_url() -> str:
    return str(get("transport.api_url", "http://localhost:3001/api/chained-voice/realtime-vad"))

def get_connect_timeout() -> float:
    return get_typed("transport.connect_timeout", 10.0, float)

def get_max_retries() -> int:
    return get_typed("transport.max_retries", 5, int)

def get_backoff_initial() -> float:
    return get_typed("transport.backoff_initial", 0.5, float)

def get_backoff_max() -> float:
    return get_typed("transport.backoff_max", 5.0, float)

def get_stop_timeout() -> float:
    return get_typed("transport.stop_timeout", 1.0, float)

def get_reconnect_attempts() -> int:
    return get_typed("transport.reconnect_attempts", 3, int)

def get_status_poll_ms() -> float:
    return get_typed("transport.polling.status_interval_ms", 1000.0, float)

def get_response_poll_ms() -> float:
    return get_typed("transport.polling.response_interval_ms", 500.0, float)


# Playback
def get_response_sample_rate() -> int:
    return get_typed("playback.sample_rate", 24000, int)

def get_response_encoding() -> str:
    return str(get("playback.encoding", "pcm16"))

def get_output_device() -> Optional[Union[int, str]]:
    """Return configured output device (int index or str name) or None."""
    return get("playback.output_device", None)


@dataclass
class AudioSettings:
    sample_rate: int = 24000
    channels: int = 1
    block_ms: float = 20.0
    input_device: Optional[Union[int, str]] = None


@dataclass
class EncoderSettings:
    encoding: str = "pcm16"
    chunk_interval_ms: float = 200.0


@dataclass
class TurnDetectorConfig:
    """Thresholds shared by local and server-driven turn detection"""
    strategy: str = "local"
    positive_threshold: float = 0.5
    negative_threshold: float = 0.35
    confirm_frames: int = 3
    silence_threshold_ms: float = 2500.0
    min_speech_ms: float = 500.0
    energy_floor: float = 0.005
    energy_ceiling: float = 0.05


@dataclass
class TransportSettings:
    kind: str = "websocket"
    url: str = "ws://localhost:3001/realtime-ws"
    api_url: str = "http://localhost:3001/api/chained-voice/realtime-vad"
    connect_timeout: float = 10.0
    max_retries: int = 5
    backoff_initial: float = 0.5
    backoff_max: float = 5.0
    stop_timeout: float = 1.0
    reconnect_attempts: int = 3
    status_poll_ms: float = 1000.0
    response_poll_ms: float = 500.0


@dataclass
class PlayerSettings:
    sample_rate: int = 24000
    encoding: str = "pcm16"
    output_device: Optional[Union[int, str]] = None


@dataclass
class EngineSettings:
    audio: AudioSettings = field(default_factory=AudioSettings)
    encoder: EncoderSettings = field(default_factory=EncoderSettings)
    turn: TurnDetectorConfig = field(default_factory=TurnDetectorConfig)
    transport: TransportSettings = field(default_factory=TransportSettings)
    player: PlayerSettings = field(default_factory=PlayerSettings)


def load_settings() -> EngineSettings:
    """Build the engine settings tree from the loaded YAML"""
    return EngineSettings(
        audio=AudioSettings(
            sample_rate=get_sample_rate(),
            channels=get_channels(),
            block_ms=get_block_ms(),
            input_device=get_input_device(),
        ),
        encoder=EncoderSettings(
            encoding=get_encoding(),
            chunk_interval_ms=get_chunk_interval_ms(),
        ),
        turn=TurnDetectorConfig(
            strategy=get_turn_strategy(),
            positive_threshold=get_positive_threshold(),
            negative_threshold=get_negative_threshold(),
            confirm_frames=get_confirm_frames(),
            silence_threshold_ms=get_silence_threshold_ms(),
            min_speech_ms=get_min_speech_ms(),
            energy_floor=get_energy_floor(),
            energy_ceiling=get_energy_ceiling(),
        ),
        transport=TransportSettings(
            kind=get_transport_kind(),
            url=get_transport_url(),
            api_url=get_api_url(),
            connect_timeout=get_connect_timeout(),
            max_retries=get_max_retries(),
            backoff_initial=get_backoff_initial(),
            backoff_max=get_backoff_max(),
            stop_timeout=get_stop_timeout(),
            reconnect_attempts=get_reconnect_attempts(),
            status_poll_ms=get_status_poll_ms(),
            response_poll_ms=get_response_poll_ms(),
        ),
        player=PlayerSettings(
            sample_rate=get_response_sample_rate(),
            encoding=get_response_encoding(),
            output_device=get_output_device(),
        ),
    )


def validate_config_silent() -> tuple[bool, List[str]]:
    """Validate configuration without raising exceptions

    Returns:
        tuple: (is_valid, list_of_errors)
    """
    try:
        if not _LOADED:
            _load()
        _validate_config(_CFG)
        return True, []
    except ValueError as e:
        return False, [str(e)]
    except yaml.YAMLError as e:
        return False, [f"Invalid YAML: {e}"]


def get_all() -> Dict[str, Any]:
    """Get the entire configuration dictionary"""
    _load()
    return _CFG.copy()


def get_config_path() -> str:
    return _CONFIG_PATH


def set_config_path(path: str) -> None:
    """Point the loader at another YAML file and reload it"""
    global _CONFIG_PATH
    _CONFIG_PATH = os.path.abspath(path)
    reload_config()


def reload_config() -> None:
    """Reload configuration from file"""
    global _CFG, _LOADED
    _LOADED = False
    _CFG = {}
    _load()
