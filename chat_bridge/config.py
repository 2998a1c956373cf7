import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

# Constants that don't change unless overridden from the environment
DEFAULT_MODEL_ID = "@cf/openai/gpt-oss-120b"
DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, friendly assistant. Provide concise and accurate responses."
)
DEFAULT_PUBLIC_DIR = Path(__file__).resolve().parent / "public"

BACKENDS = ("openai", "workers-ai")


@dataclass(frozen=True)
class Settings:
    """Process-wide settings. Built once at startup and never mutated."""

    model_id: str = DEFAULT_MODEL_ID
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    # Workers AI credentials
    account_id: str = ""
    api_token: str = ""
    backend: str = "openai"
    base_url: str = ""

    # Streaming limits, 0 means no timeout
    stream_timeout_seconds: float = 300.0
    stream_buffer_size: int = 16

    public_dir: Path = DEFAULT_PUBLIC_DIR
    log_level: str = "INFO"

    @property
    def openai_base_url(self) -> str:
        if self.base_url:
            return self.base_url
        return f"https://api.cloudflare.com/client/v4/accounts/{self.account_id}/ai/v1"


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"Configuration value is invalid: {name}={raw!r}")
    if value < 0:
        raise ValueError(f"Configuration value is invalid: {name}={raw!r}")
    return value


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Configuration value is invalid: {name}={raw!r}")
    if value < 1:
        raise ValueError(f"Configuration value is invalid: {name}={raw!r}")
    return value


def load_settings() -> Settings:
    """
    Read the settings from the environment (and a .env file if present).

    :return: validated settings
    :rtype: Settings
    """
    backend = os.getenv("INFERENCE_BACKEND", "openai").strip().lower() or "openai"
    if backend not in BACKENDS:
        raise ValueError(f"Configuration value is invalid: INFERENCE_BACKEND={backend!r}")

    public_dir = os.getenv("PUBLIC_DIR", "").strip()

    return Settings(
        model_id=os.getenv("MODEL_ID", "").strip() or DEFAULT_MODEL_ID,
        system_prompt=os.getenv("SYSTEM_PROMPT", "").strip() or DEFAULT_SYSTEM_PROMPT,
        account_id=os.getenv("CLOUDFLARE_ACCOUNT_ID", "").strip(),
        api_token=os.getenv("CLOUDFLARE_API_TOKEN", "").strip(),
        backend=backend,
        base_url=os.getenv("INFERENCE_BASE_URL", "").strip(),
        stream_timeout_seconds=_float_env("STREAM_TIMEOUT_SECONDS", 300.0),
        stream_buffer_size=_int_env("STREAM_BUFFER_SIZE", 16),
        public_dir=Path(public_dir) if public_dir else DEFAULT_PUBLIC_DIR,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip() or "INFO",
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the cached settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def create_logger(log_level: str = "INFO", logger_name: str = "chat_bridge") -> logging.Logger:
    """
    Configure the package logger with a console handler.

    :param log_level: logging level name (e.g. "INFO", "DEBUG")
    :type log_level: str
    :param logger_name: logger to configure, module loggers propagate to it
    :type logger_name: str
    :return: configured logger
    :rtype: logging.Logger
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    if not logger.handlers:  # prevent handler duplication on reload
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(handler)

    return logger
