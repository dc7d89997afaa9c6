"""Configuration management for the TeX article renderer."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _get_base_dir() -> Path:
    """Project root (the directory holding core/ and services/)."""
    return Path(__file__).resolve().parents[1]


# Load .env from the project root before the Settings defaults are evaluated
_env_path = _get_base_dir() / ".env"
if _env_path.exists():
    load_dotenv(_env_path)


def _parse_math_output(value: str) -> str:
    """Validate TEXHTML_MATH_OUTPUT, falling back to plain delimiters."""
    value = value.strip().lower()
    if value not in ("delimiters", "mathml"):
        return "delimiters"
    return value


@dataclass
class Settings:
    """Application settings."""

    base_dir: Path = _get_base_dir()
    data_dir: Path = base_dir / "data"
    output_dir: Path = data_dir / "html"
    host: str = os.getenv("TEXHTML_HOST", "127.0.0.1")
    port: int = int(os.getenv("TEXHTML_PORT", "8000"))
    log_level: str = os.getenv("TEXHTML_LOG_LEVEL", "INFO")
    log_file_level: str = os.getenv("TEXHTML_LOG_FILE_LEVEL", os.getenv("TEXHTML_LOG_LEVEL", "INFO"))
    worker_count: int = max(1, int(os.getenv("TEXHTML_WORKERS", "2")))
    # Seconds; 0 disables the caller-side timeout
    parse_timeout: float = float(os.getenv("TEXHTML_PARSE_TIMEOUT", "30"))
    math_output: str = _parse_math_output(os.getenv("TEXHTML_MATH_OUTPUT", "delimiters"))
    katex_url: str = os.getenv(
        "TEXHTML_KATEX_URL", "https://cdn.jsdelivr.net/npm/katex@0.16.11/dist"
    )


settings = Settings()
