"""Centralized constants for the voicepipe session engine.

All magic numbers and timeout values should be defined here for easy maintenance.
"""

# Audio format accepted from the client
INPUT_SAMPLE_RATE: int = 16_000  # PCM16LE mono
INPUT_CHANNELS: int = 1

# Endpointing defaults
DEFAULT_SILENCE_THRESHOLD_MS: int = 1000
DEFAULT_MAX_RECORDING_SECONDS: int = 30

# Transcription adapter
FINISH_FALLBACK_TIMEOUT: float = 2.0  # finish() never waits longer than this for UtteranceEnd
UTTERANCE_END_MS: int = 1000  # Deepgram utterance_end_ms

# Provider input bounds (characters; longer input is truncated)
MAX_LLM_INPUT_CHARS: int = 2000
MAX_TTS_INPUT_CHARS: int = 4000
MAX_RESPONSE_BULLETS: int = 3

# Synthesis output
TTS_SAMPLE_RATE: int = 24_000
TTS_MIME_TYPE: str = "audio/wav"

# Admission
DEFAULT_MAX_CONNECTIONS_PER_CLIENT: int = 3
DEFAULT_RATE_LIMIT_WINDOW_MS: int = 60_000
DEFAULT_RATE_LIMIT_MAX_REQUESTS: int = 10
POLICY_VIOLATION_CLOSE_CODE: int = 1008

# Models
DEFAULT_ANTHROPIC_MODEL: str = "claude-sonnet-4-5-20250929"
DEFAULT_TTS_VOICE: str = "ee7ea9f8-c0c1-498c-9279-764d6b56d189"
