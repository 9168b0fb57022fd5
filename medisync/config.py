"""
config.py
=========
Environment-driven settings for the MediSync consultation backend.

Every value can be overridden with an environment variable (or a .env file
loaded by the process manager). Timing values follow one rule: both the
doctor heartbeat and the patient-side watchdog must tick faster than the
staleness threshold, otherwise a healthy doctor looks disconnected.
"""

import os
from dataclasses import dataclass, field
from typing import List


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _env_list(name: str, default: str = "") -> List[str]:
    raw = os.getenv(name, default) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    """Runtime settings. Build with load_settings()."""
    db_path: str = "data/medisync.db"
    heartbeat_interval_s: float = 10.0
    watchdog_interval_s: float = 10.0
    staleness_threshold_ms: int = 30000
    match_attempts: int = 3
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:4200"])
    pushover_token: str = ""
    debug: bool = False
    seed_demo: bool = False

    def validate(self) -> "Settings":
        threshold_s = self.staleness_threshold_ms / 1000.0
        if self.heartbeat_interval_s >= threshold_s:
            raise ValueError(
                f"HEARTBEAT_INTERVAL_S ({self.heartbeat_interval_s}) must be below "
                f"the staleness threshold ({threshold_s}s)"
            )
        if self.watchdog_interval_s >= threshold_s:
            raise ValueError(
                f"WATCHDOG_INTERVAL_S ({self.watchdog_interval_s}) must be below "
                f"the staleness threshold ({threshold_s}s)"
            )
        if self.match_attempts < 1:
            raise ValueError("MATCH_ATTEMPTS must be at least 1")
        return self


def load_settings() -> Settings:
    """
    Read settings from the environment.
    Raises ValueError when the timing values are inconsistent.
    """
    return Settings(
        db_path=os.getenv("MEDISYNC_DB", "data/medisync.db"),
        heartbeat_interval_s=float(os.getenv("HEARTBEAT_INTERVAL_S", "10")),
        watchdog_interval_s=float(os.getenv("WATCHDOG_INTERVAL_S", "10")),
        staleness_threshold_ms=int(os.getenv("STALENESS_THRESHOLD_MS", "30000")),
        match_attempts=int(os.getenv("MATCH_ATTEMPTS", "3")),
        cors_origins=_env_list("CORS_ORIGINS", "http://localhost:4200"),
        pushover_token=os.getenv("PUSHOVER_TOKEN", ""),
        debug=_env_bool("MEDISYNC_DEBUG"),
        seed_demo=_env_bool("MEDISYNC_SEED_DEMO"),
    ).validate()
