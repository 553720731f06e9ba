"""
config/settings.py — Basma Voice Runtime Settings

Merges config.yaml (defaults/structure) with environment variables / .env.
Pydantic-powered — all fields are validated and typed.

  - VoiceConfig rejects unknown languages and TTS formats at parse time
  - Sample rates, thresholds and the analyser FFT size are range-checked
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a clear, human-readable message listing every problem
  - load_settings() respects BASMA_VOICE_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LANGUAGES   = {"en", "ar", "mixed"}
_VALID_TTS_FORMATS = {"wav", "mp3", "mulaw", "pcm"}
_VALID_LOG_LEVELS  = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_DEFAULT_BACKEND_URL = "http://localhost:8787"


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class VoiceConfig(BaseModel):
    """
    Per-session voice configuration. Frozen: a session reads it once at
    construction and it never changes underneath a running pipeline.
    """

    model_config = ConfigDict(frozen=True)

    backend_url: str = _DEFAULT_BACKEND_URL
    sample_rate_in: int = 16000
    sample_rate_out: int = 24000
    enable_vad: bool = True
    language: str = "mixed"

    # VAD / utterance segmentation
    vad_threshold: float = 0.01
    silence_duration_ms: int = 800
    max_utterance_s: int = 30
    no_speech_timeout_s: float = 8.0

    # Level monitor
    level_refresh_hz: float = 60.0
    fft_size: int = 256

    # Backend TTS request defaults
    tts_voice: str = "alloy"
    tts_format: str = "mp3"

    # Local (Piper) fallback voices
    piper_model_path: str = ""
    local_voices: dict[str, str] = Field(default_factory=dict)

    mic_device_index: Optional[int] = None

    @field_validator("language")
    @classmethod
    def _valid_language(cls, v: str) -> str:
        if v not in _VALID_LANGUAGES:
            raise ValueError(
                f"voice.language must be one of {sorted(_VALID_LANGUAGES)}, got '{v}'"
            )
        return v

    @field_validator("tts_format")
    @classmethod
    def _valid_format(cls, v: str) -> str:
        if v not in _VALID_TTS_FORMATS:
            raise ValueError(
                f"voice.tts_format must be one of {sorted(_VALID_TTS_FORMATS)}, got '{v}'"
            )
        return v

    @field_validator("sample_rate_in", "sample_rate_out")
    @classmethod
    def _positive_rate(cls, v: int) -> int:
        if v < 1:
            raise ValueError("voice sample rates must be >= 1 Hz")
        return v

    @field_validator("vad_threshold")
    @classmethod
    def _valid_threshold(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("voice.vad_threshold must be between 0.0 and 1.0")
        return v

    @field_validator("silence_duration_ms", "max_utterance_s")
    @classmethod
    def _positive_durations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("voice durations must be >= 1")
        return v

    @field_validator("no_speech_timeout_s", "level_refresh_hz")
    @classmethod
    def _positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("voice.no_speech_timeout_s and voice.level_refresh_hz must be > 0")
        return v

    @field_validator("fft_size")
    @classmethod
    def _power_of_two(cls, v: int) -> int:
        if v < 32 or v > 32768 or v & (v - 1):
            raise ValueError("voice.fft_size must be a power of two between 32 and 32768")
        return v


class BackendConfig(BaseModel):
    timeout_s: float = 30.0

    @field_validator("timeout_s")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("backend.timeout_s must be > 0")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 20
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Basma Voice runtime settings.

    Priority (highest to lowest):
      1. config.yaml sections (passed as init kwargs by the loader)
      2. Environment variables (BASMA_BACKEND_URL, VOICE__LANGUAGE, ...)
      3. .env file
      4. Field defaults

    BASMA_BACKEND_URL is a flat field, so it always wins over
    voice.backend_url from the YAML file (see effective_voice).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Flat overrides from the environment ---------------------------------
    backend_url: Optional[str] = Field(default=None, alias="BASMA_BACKEND_URL")

    # -- Structured config (from config.yaml) --------------------------------
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("voice", mode="before")
    @classmethod
    def _coerce_voice(cls, v: Any) -> Any:
        return VoiceConfig(**v) if isinstance(v, dict) else v

    @field_validator("backend", mode="before")
    @classmethod
    def _coerce_backend(cls, v: Any) -> Any:
        return BackendConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def effective_voice(self) -> VoiceConfig:
        """VoiceConfig with the BASMA_BACKEND_URL override applied."""
        if self.backend_url:
            return self.voice.model_copy(update={"backend_url": self.backend_url})
        return self.voice

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def log_json_format(self) -> bool:
        return self.logging.json_format

    @property
    def log_console_output(self) -> bool:
        return self.logging.console_output

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems they can't see.
        """
        errors: list[str] = []
        voice = self.effective_voice

        # ── Backend URL ──────────────────────────────────────────────────────
        url = voice.backend_url.strip()
        if not url:
            errors.append(
                "voice.backend_url is empty. Set it in config.yaml or "
                "BASMA_BACKEND_URL."
            )
        else:
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(
                    f"voice.backend_url '{url}' must be an absolute http(s) URL."
                )

        # ── Local voices must not be blank paths ─────────────────────────────
        for lang, path in voice.local_voices.items():
            if not str(path).strip():
                errors.append(f"voice.local_voices['{lang}'] has an empty model path.")

        # ── Segmentation must fit within the utterance cap ───────────────────
        if voice.silence_duration_ms >= voice.max_utterance_s * 1000:
            errors.append(
                "voice.silence_duration_ms must be shorter than voice.max_utterance_s."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nBasma Voice startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. BASMA_VOICE_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("BASMA_VOICE_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings by merging config.yaml with environment variables.

    Config path resolution order:
      1. config_path argument  (--config CLI flag)
      2. BASMA_VOICE_CONFIG env var
      3. config/config.yaml   (default)
    """
    global _singleton
    instance = _build_settings(config_path)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default config
    path on first use. Guarded by _singleton_lock against double init.
    """
    global _singleton
    if _singleton is not None:
        return _singleton  # fast path — no lock needed once set
    with _singleton_lock:
        if _singleton is None:
            _singleton = _build_settings(None)
        return _singleton


_KNOWN_SECTIONS = {"voice", "backend", "logging"}


def _build_settings(config_path: str | Path | None) -> Settings:
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}
    return Settings(**init_kwargs)
