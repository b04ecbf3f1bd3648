"""Configuration management for API keys and settings."""

import os
from typing import Dict, Optional
from pathlib import Path

from dotenv import load_dotenv

# config.py is in copilot/, .env is in project root
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path)


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _device_env(name: str):
    """Device selector: an integer index, a name substring, or None for the default device."""
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    return int(raw) if raw.isdigit() else raw


class Config:
    """Application configuration from environment variables."""

    # Runtime environment ("production" disables the unverified token fallback)
    ENV: str = os.getenv("COPILOT_ENV", "development").strip().lower()

    # OpenAI settings (primary chat + Whisper transcription)
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    OPENAI_CHAT_MODEL: str = os.getenv("OPENAI_CHAT_MODEL", "gpt-4o")
    OPENAI_TRANSCRIBE_MODEL: str = os.getenv("OPENAI_TRANSCRIBE_MODEL", "whisper-1")

    # Gemini settings (fallback chat + lighter transcription model)
    GEMINI_API_KEY: Optional[str] = os.getenv("GEMINI_API_KEY")
    GEMINI_BASE_URL: str = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-1.5-pro")
    GEMINI_TRANSCRIBE_MODEL: str = os.getenv("GEMINI_TRANSCRIBE_MODEL", "gemini-1.5-flash")

    # Server side: "token:uid,token:uid" pairs accepted as verified bearer tokens
    API_TOKENS: str = os.getenv("COPILOT_API_TOKENS", "")
    # Empty path keeps the credit ledger in memory
    LEDGER_PATH: str = os.getenv("COPILOT_LEDGER_PATH", "")
    # Interim uploads bigger than this are billed as final transcriptions
    MAX_INTERIM_AUDIO_BYTES: int = _int_env("MAX_INTERIM_AUDIO_BYTES", 1_000_000)

    # Client side
    SERVER_URL: str = os.getenv("COPILOT_SERVER_URL", "http://127.0.0.1:8010")
    AUTH_TOKEN: Optional[str] = os.getenv("COPILOT_AUTH_TOKEN")
    STORAGE_PATH: str = os.getenv("COPILOT_STORAGE_PATH", str(Path.home() / ".copilot" / "storage.json"))

    # Recorder settings
    SAMPLE_RATE: int = _int_env("SAMPLE_RATE", 16000)
    CHUNK_SECONDS: float = _float_env("CHUNK_SECONDS", 3.0)
    INTERIM_WINDOW: int = _int_env("INTERIM_WINDOW", 6)
    INTERIM_COOLDOWN_SECONDS: float = _float_env("INTERIM_COOLDOWN_SECONDS", 5.0)

    # Devices
    MIC_DEVICE = _device_env("MIC_DEVICE")
    LOOPBACK_DEVICE = _device_env("LOOPBACK_DEVICE")

    # On-device recognition
    VOSK_MODEL_PATH: str = os.getenv("VOSK_MODEL_PATH", "")
    NATIVE_MAX_SESSION_SECONDS: float = _float_env("NATIVE_MAX_SESSION_SECONDS", 60.0)

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def is_production(cls) -> bool:
        return cls.ENV == "production"

    @classmethod
    def api_tokens(cls) -> Dict[str, str]:
        """Parse COPILOT_API_TOKENS into a token -> uid map."""
        tokens: Dict[str, str] = {}
        for pair in cls.API_TOKENS.split(","):
            token, sep, uid = pair.strip().partition(":")
            if sep and token and uid:
                tokens[token.strip()] = uid.strip()
        return tokens

    @classmethod
    def validate(cls) -> list[str]:
        """Validate configuration and return list of missing required settings."""
        missing = []

        if not cls.OPENAI_API_KEY and not cls.GEMINI_API_KEY:
            missing.append("OPENAI_API_KEY or GEMINI_API_KEY (at least one AI provider)")

        if cls.is_production() and not cls.API_TOKENS:
            missing.append("COPILOT_API_TOKENS (required when COPILOT_ENV=production)")

        return missing
