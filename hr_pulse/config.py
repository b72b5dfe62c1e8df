"""Configuration helpers for HR Pulse."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

STORE_BACKENDS = ("firebase", "memory")


@dataclass(slots=True)
class Settings:
    """Runtime configuration values loaded from environment variables."""

    admin_id: str
    api_key: str
    store_backend: str = "firebase"
    store_url: Optional[str] = None
    store_auth_token: Optional[str] = None
    database_path: Path = Path("hr_pulse.db")
    timezone: str = "UTC"
    notification_interval_seconds: float = 60.0
    reminder_lead_minutes: int = 5
    subscribe_max_attempts: int = 5
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 60.0
    persist_attempts: int = 3
    roster_active_only: bool = True
    startup_timeout_seconds: float = 10.0


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_settings(env_file: str | None = None) -> Settings:
    """Load settings from the environment, optionally from a specific file."""

    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    admin_id = os.getenv("ADMIN_ID")
    api_key = os.getenv("API_KEY")
    backend = os.getenv("STORE_BACKEND", "firebase").strip().lower()
    store_url = os.getenv("STORE_URL")

    if not admin_id:
        raise RuntimeError("ADMIN_ID must be configured")
    if not api_key:
        raise RuntimeError("API_KEY must be configured")
    if backend not in STORE_BACKENDS:
        raise RuntimeError(f"STORE_BACKEND must be one of: {', '.join(STORE_BACKENDS)}")
    if backend == "firebase" and not store_url:
        raise RuntimeError("STORE_URL must be configured for the firebase backend")

    return Settings(
        admin_id=admin_id,
        api_key=api_key,
        store_backend=backend,
        store_url=store_url,
        store_auth_token=os.getenv("STORE_AUTH_TOKEN") or None,
        database_path=Path(os.getenv("DATABASE_PATH", "hr_pulse.db")).expanduser(),
        timezone=os.getenv("TIMEZONE", "UTC"),
        notification_interval_seconds=float(os.getenv("NOTIFICATION_INTERVAL_SECONDS", "60")),
        reminder_lead_minutes=int(os.getenv("REMINDER_LEAD_MINUTES", "5")),
        subscribe_max_attempts=int(os.getenv("SUBSCRIBE_MAX_ATTEMPTS", "5")),
        retry_base_seconds=float(os.getenv("RETRY_BASE_SECONDS", "1")),
        retry_max_seconds=float(os.getenv("RETRY_MAX_SECONDS", "60")),
        persist_attempts=int(os.getenv("PERSIST_ATTEMPTS", "3")),
        roster_active_only=_env_bool("ROSTER_ACTIVE_ONLY", True),
        startup_timeout_seconds=float(os.getenv("STARTUP_TIMEOUT_SECONDS", "10")),
    )


__all__ = ["Settings", "load_settings", "STORE_BACKENDS"]
