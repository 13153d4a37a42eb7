"""Configuration handling."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

import yaml

from .errors import ConfigError

SCORING_FAILURE_POLICIES = ("retry", "silent", "block")

ENV_BACKEND_URL = "CCLPRACTICE_BACKEND_URL"
ENV_ANON_KEY = "CCLPRACTICE_ANON_KEY"


@dataclass
class BackendConfig:
    url: str = ""
    anon_key: Optional[str] = None
    audio_bucket: str = "dialogue-audio"
    signed_url_expiry_seconds: int = 60
    timeout_seconds: Optional[float] = None


@dataclass
class AudioConfig:
    sample_rate_hz: int = 24000
    chunk_interval_ms: int = 100
    echo_cancellation: bool = True
    noise_suppression: bool = True
    input_device: Optional[str] = None
    output_device: Optional[str] = None


@dataclass
class SessionPolicy:
    strict_advance: bool = True
    on_scoring_failure: str = "retry"
    auto_advance: bool = True
    auto_finish: bool = False
    min_recording_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.on_scoring_failure not in SCORING_FAILURE_POLICIES:
            raise ConfigError(
                f"on_scoring_failure must be one of {', '.join(SCORING_FAILURE_POLICIES)}"
            )
        if self.min_recording_seconds < 0:
            raise ConfigError("min_recording_seconds must be >= 0.")

    @classmethod
    def strict(cls, **overrides) -> "SessionPolicy":
        """Next stays locked until the current segment is scored."""
        return cls(**{"strict_advance": True, "auto_finish": False, **overrides})

    @classmethod
    def relaxed(cls, **overrides) -> "SessionPolicy":
        """Submit advances at once; the last submission requests the result."""
        return cls(**{"strict_advance": False, "auto_finish": True, **overrides})


@dataclass
class Config:
    user_id: Optional[str] = None
    language: Optional[str] = None
    language_id: Optional[str] = None
    log_dir: str = "logs"
    backend: BackendConfig = field(default_factory=BackendConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    session: SessionPolicy = field(default_factory=SessionPolicy)


def _section(data: dict, name: str) -> dict:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping.")
    return value


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    try:
        backend = BackendConfig(**_section(data, "backend"))
        audio = AudioConfig(**_section(data, "audio"))
        session = SessionPolicy(**_section(data, "session"))
    except TypeError as exc:
        raise ConfigError(f"Unknown config key in {path}: {exc}") from exc

    config = Config(
        user_id=data.get("user_id"),
        language=data.get("language"),
        language_id=data.get("language_id"),
        log_dir=data.get("log_dir", "logs"),
        backend=backend,
        audio=audio,
        session=session,
    )
    return apply_env(config)


def apply_env(config: Config) -> Config:
    url = os.environ.get(ENV_BACKEND_URL)
    if url:
        config.backend.url = url
    key = os.environ.get(ENV_ANON_KEY)
    if key:
        config.backend.anon_key = key
    return config


def save_config(path: str, config: Config) -> None:
    data = {
        "user_id": config.user_id,
        "language": config.language,
        "language_id": config.language_id,
        "log_dir": config.log_dir,
        "backend": {
            "url": config.backend.url,
            "anon_key": config.backend.anon_key,
            "audio_bucket": config.backend.audio_bucket,
            "signed_url_expiry_seconds": config.backend.signed_url_expiry_seconds,
            "timeout_seconds": config.backend.timeout_seconds,
        },
        "audio": {
            "sample_rate_hz": config.audio.sample_rate_hz,
            "chunk_interval_ms": config.audio.chunk_interval_ms,
            "echo_cancellation": config.audio.echo_cancellation,
            "noise_suppression": config.audio.noise_suppression,
            "input_device": config.audio.input_device,
            "output_device": config.audio.output_device,
        },
        "session": {
            "strict_advance": config.session.strict_advance,
            "on_scoring_failure": config.session.on_scoring_failure,
            "auto_advance": config.session.auto_advance,
            "auto_finish": config.session.auto_finish,
            "min_recording_seconds": config.session.min_recording_seconds,
        },
    }
    with open(path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)
