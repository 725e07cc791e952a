"""Environment-sourced settings for the voicepipe engine.

Values come from ``os.environ`` after ``load_dotenv()`` has merged a local
``.env`` file (real environment variables win).  ``Settings.validate()``
collects every problem and raises a single ``ConfigError`` so the operator
sees the full list at once; the app lifespan calls it before accepting
connections, which makes a bad configuration fatal at startup.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping

from dotenv import load_dotenv

from voicepipe.constants import (
    DEFAULT_ANTHROPIC_MODEL,
    DEFAULT_MAX_CONNECTIONS_PER_CLIENT,
    DEFAULT_MAX_RECORDING_SECONDS,
    DEFAULT_RATE_LIMIT_MAX_REQUESTS,
    DEFAULT_RATE_LIMIT_WINDOW_MS,
    DEFAULT_SILENCE_THRESHOLD_MS,
    DEFAULT_TTS_VOICE,
)
from voicepipe.errors import ConfigError
from voicepipe.telemetry import DEFAULT_OTLP_ENDPOINT

logger = logging.getLogger(__name__)

REQUIRED_CREDENTIALS = ("DEEPGRAM_API_KEY", "ANTHROPIC_API_KEY", "CARTESIA_API_KEY")


def _int_setting(env: Mapping[str, str], key: str, default: int, problems: list[str]) -> int:
    raw = env.get(key, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        problems.append(f"{key} must be an integer (got {raw!r})")
        return default


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration."""

    port: int = 3000
    host: str = "0.0.0.0"
    max_recording_seconds: int = DEFAULT_MAX_RECORDING_SECONDS
    silence_threshold_ms: int = DEFAULT_SILENCE_THRESHOLD_MS
    rate_limit_window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS
    rate_limit_max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS
    max_connections_per_client: int = DEFAULT_MAX_CONNECTIONS_PER_CLIENT
    deepgram_api_key: str = ""
    anthropic_api_key: str = ""
    cartesia_api_key: str = ""
    anthropic_model: str = DEFAULT_ANTHROPIC_MODEL
    tts_voice: str = DEFAULT_TTS_VOICE
    otel_exporter: str = "console"
    otel_endpoint: str = DEFAULT_OTLP_ENDPOINT
    parse_problems: tuple[str, ...] = field(default=(), compare=False, repr=False)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        """Build settings from *env* (defaults to ``os.environ`` + ``.env``)."""
        if env is None:
            load_dotenv()
            env = os.environ

        problems: list[str] = []
        return cls(
            port=_int_setting(env, "PORT", 3000, problems),
            host=env.get("HOST", "0.0.0.0") or "0.0.0.0",
            max_recording_seconds=_int_setting(
                env, "MAX_RECORDING_SECONDS", DEFAULT_MAX_RECORDING_SECONDS, problems
            ),
            silence_threshold_ms=_int_setting(
                env, "VAD_SILENCE_THRESHOLD_MS", DEFAULT_SILENCE_THRESHOLD_MS, problems
            ),
            rate_limit_window_ms=_int_setting(
                env, "RATE_LIMIT_WINDOW_MS", DEFAULT_RATE_LIMIT_WINDOW_MS, problems
            ),
            rate_limit_max_requests=_int_setting(
                env, "RATE_LIMIT_MAX_REQUESTS", DEFAULT_RATE_LIMIT_MAX_REQUESTS, problems
            ),
            max_connections_per_client=_int_setting(
                env, "MAX_CONNECTIONS_PER_CLIENT", DEFAULT_MAX_CONNECTIONS_PER_CLIENT, problems
            ),
            deepgram_api_key=env.get("DEEPGRAM_API_KEY", ""),
            anthropic_api_key=env.get("ANTHROPIC_API_KEY", ""),
            cartesia_api_key=env.get("CARTESIA_API_KEY", ""),
            anthropic_model=env.get("ANTHROPIC_MODEL", "") or DEFAULT_ANTHROPIC_MODEL,
            tts_voice=env.get("TTS_VOICE", "") or DEFAULT_TTS_VOICE,
            otel_exporter=env.get("OTEL_EXPORTER", "") or "console",
            otel_endpoint=env.get("OTEL_EXPORTER_OTLP_ENDPOINT", "") or DEFAULT_OTLP_ENDPOINT,
            parse_problems=tuple(problems),
        )

    @property
    def rate_limit_window_seconds(self) -> float:
        return self.rate_limit_window_ms / 1000.0

    def validate(self) -> None:
        """Raise ``ConfigError`` listing every configuration problem."""
        problems = list(self.parse_problems)

        credentials = {
            "DEEPGRAM_API_KEY": self.deepgram_api_key,
            "ANTHROPIC_API_KEY": self.anthropic_api_key,
            "CARTESIA_API_KEY": self.cartesia_api_key,
        }
        for key in REQUIRED_CREDENTIALS:
            if not credentials[key]:
                problems.append(f"{key} is required")

        positive = {
            "PORT": self.port,
            "MAX_RECORDING_SECONDS": self.max_recording_seconds,
            "VAD_SILENCE_THRESHOLD_MS": self.silence_threshold_ms,
            "RATE_LIMIT_WINDOW_MS": self.rate_limit_window_ms,
            "RATE_LIMIT_MAX_REQUESTS": self.rate_limit_max_requests,
            "MAX_CONNECTIONS_PER_CLIENT": self.max_connections_per_client,
        }
        for key, value in positive.items():
            if value <= 0:
                problems.append(f"{key} must be positive (got {value})")

        if self.otel_exporter.lower() not in ("console", "otlp"):
            problems.append(f"OTEL_EXPORTER must be console or otlp (got {self.otel_exporter!r})")

        if problems:
            for problem in problems:
                logger.error("[Config] %s", problem)
            raise ConfigError(problems)

        logger.info(
            "[Config] Loaded: silence=%dms max_recording=%ds max_conn/client=%d",
            self.silence_threshold_ms,
            self.max_recording_seconds,
            self.max_connections_per_client,
        )
