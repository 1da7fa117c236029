"""Runtime settings resolved from the process environment."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _path_env(name: str) -> Path | None:
    raw = os.getenv(name)
    if not raw:
        return None
    return Path(raw).expanduser().resolve()


@dataclass(frozen=True)
class Settings:
    db_path: str = ":memory:"
    guest_storage_root: Path | None = None
    guest_secret: str = "insightdesk-dev-guest-secret"
    guest_window_hours: int = 24
    usage_version: int = 2
    plans_file: Path | None = None
    mirror_capacity: int = 1024
    guest_session_capacity: int = 10_000
    trust_plan_header: bool = False
    cors_origins: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    @classmethod
    def from_env(cls) -> "Settings":
        origins_env = os.getenv("API_CORS_ORIGINS", "")
        origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()]
        return cls(
            db_path=os.getenv("INSIGHTDESK_DB_PATH") or ":memory:",
            guest_storage_root=_path_env("INSIGHTDESK_GUEST_STORAGE_ROOT"),
            guest_secret=os.getenv("INSIGHTDESK_GUEST_SECRET") or cls.guest_secret,
            guest_window_hours=_int_env("INSIGHTDESK_GUEST_WINDOW_HOURS", 24),
            usage_version=_int_env("INSIGHTDESK_USAGE_VERSION", 2),
            plans_file=_path_env("INSIGHTDESK_PLANS_FILE"),
            mirror_capacity=_int_env("INSIGHTDESK_MIRROR_CAPACITY", 1024),
            guest_session_capacity=_int_env("INSIGHTDESK_GUEST_SESSION_CAPACITY", 10_000),
            trust_plan_header=_bool_env("INSIGHTDESK_TRUST_PLAN_HEADER"),
            cors_origins=origins or list(DEFAULT_CORS_ORIGINS),
        )
