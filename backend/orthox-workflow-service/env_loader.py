"""
Loads local environment files for orthox-workflow-service and parses settings.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

SERVICE_DIR = Path(__file__).resolve().parent
_TRUTHY = {"1", "true", "yes", "on"}


def load_service_env() -> None:
    """
    Loads service-local `.env` and `.env.local` if present.
    Existing shell exports take precedence.
    """
    load_dotenv(SERVICE_DIR / ".env", override=False)
    load_dotenv(SERVICE_DIR / ".env.local", override=False)


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, default) or default).strip()


def env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY
