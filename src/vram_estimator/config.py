"""Environment variable loading and configuration."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_OLLAMA_HOST = "http://localhost:11434"
DEFAULT_CACHE_DIR = Path.home() / ".cache" / "huggingface" / "hub"
DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class Settings:
    hf_token: str | None
    ollama_host: str
    cache_dir: Path
    timeout: float


def _get_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {value!r}") from None


def load_settings(env_file: str | Path | None = None) -> Settings:
    """Read settings from the environment, after loading an optional .env.

    Values already present in the environment win over the .env file.
    """

    load_dotenv(env_file)
    cache_dir = os.getenv("VRAM_ESTIMATOR_CACHE_DIR")
    ollama_host = (os.getenv("OLLAMA_HOST") or DEFAULT_OLLAMA_HOST).rstrip("/")
    if "://" not in ollama_host:
        # ollama itself accepts a bare host:port
        ollama_host = f"http://{ollama_host}"
    return Settings(
        hf_token=os.getenv("HF_TOKEN") or None,
        ollama_host=ollama_host,
        cache_dir=Path(cache_dir).expanduser() if cache_dir else DEFAULT_CACHE_DIR,
        timeout=_get_float("VRAM_ESTIMATOR_TIMEOUT", DEFAULT_TIMEOUT),
    )
