"""
Runtime configuration for RaceSteward.

Settings come from environment variables (a ``.env`` file is loaded by
the CLI and the server entry points via python-dotenv).
"""

import os
from dataclasses import dataclass, field

from event_clock import DEFAULT_WARNING_BUFFER_MINUTES

__version__ = "0.1.0"

# Push providers accept at most this many device tokens per multicast
MAX_PUSH_BATCH_SIZE = 500


class ConfigError(ValueError):
    """Raised when settings are inconsistent."""
    pass


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    """Configuration for the sweeper, dispatcher, storage and API."""

    # Storage
    storage_backend: str = "json"
    data_file: str = "racesteward_data.json"
    database_url: str | None = None

    # Sweeper
    sweep_interval_seconds: int = 900
    warning_buffer_minutes: int = DEFAULT_WARNING_BUFFER_MINUTES
    active_event_grace_hours: int = 24

    # Push delivery
    push_backend: str = "log"
    push_batch_size: int = MAX_PUSH_BATCH_SIZE
    fcm_project_id: str | None = None
    fcm_access_token: str | None = None
    fcm_timeout_seconds: float = 10.0

    # Links and roles
    app_base_url: str = ""
    super_admin_id: str | None = None
    display_name_ttl_seconds: int = 300

    # API
    api_key: str | None = None
    require_auth: bool = False
    host: str = "0.0.0.0"
    port: int = 5000

    log_level: str = "INFO"
    log_format: str = field(default="console")

    @classmethod
    def from_env(cls) -> "Settings":
        """Create configuration from environment variables."""
        return cls(
            storage_backend=os.getenv("STORAGE_BACKEND", "json").lower(),
            data_file=os.getenv("RACESTEWARD_DATA_FILE", "racesteward_data.json"),
            database_url=os.getenv("DATABASE_URL") or None,
            sweep_interval_seconds=int(os.getenv("SWEEP_INTERVAL_SECONDS", "900")),
            warning_buffer_minutes=int(
                os.getenv("WARNING_BUFFER_MINUTES", str(DEFAULT_WARNING_BUFFER_MINUTES))
            ),
            active_event_grace_hours=int(os.getenv("ACTIVE_EVENT_GRACE_HOURS", "24")),
            push_backend=os.getenv("PUSH_BACKEND", "log").lower(),
            push_batch_size=int(os.getenv("PUSH_BATCH_SIZE", str(MAX_PUSH_BATCH_SIZE))),
            fcm_project_id=os.getenv("FCM_PROJECT_ID") or None,
            fcm_access_token=os.getenv("FCM_ACCESS_TOKEN") or None,
            fcm_timeout_seconds=float(os.getenv("FCM_TIMEOUT_SECONDS", "10")),
            app_base_url=os.getenv("APP_BASE_URL", "").rstrip("/"),
            super_admin_id=os.getenv("SUPER_ADMIN_ID") or None,
            display_name_ttl_seconds=int(os.getenv("DISPLAY_NAME_TTL_SECONDS", "300")),
            api_key=os.getenv("RACESTEWARD_API_KEY") or None,
            require_auth=_env_bool("RACESTEWARD_REQUIRE_AUTH"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "5000")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "console").lower(),
        )

    def validate(self) -> list[str]:
        """
        Check settings for inconsistencies.

        Returns:
            List of problems; empty when the settings are usable
        """
        problems = []
        if self.sweep_interval_seconds <= 0:
            problems.append("SWEEP_INTERVAL_SECONDS must be positive")
        # One sweep must always land inside every warning window
        if self.warning_buffer_minutes * 60 * 2 < self.sweep_interval_seconds:
            problems.append(
                "WARNING_BUFFER_MINUTES must be at least half of SWEEP_INTERVAL_SECONDS "
                f"({self.warning_buffer_minutes}m < {self.sweep_interval_seconds / 120:g}m)"
            )
        if not 1 <= self.push_batch_size <= MAX_PUSH_BATCH_SIZE:
            problems.append(f"PUSH_BATCH_SIZE must be between 1 and {MAX_PUSH_BATCH_SIZE}")
        if self.active_event_grace_hours < 0:
            problems.append("ACTIVE_EVENT_GRACE_HOURS must not be negative")
        if self.storage_backend in ("postgresql", "postgres") and not self.database_url:
            problems.append("DATABASE_URL is required for the PostgreSQL backend")
        if self.push_backend == "fcm" and not (self.fcm_project_id and self.fcm_access_token):
            problems.append("FCM_PROJECT_ID and FCM_ACCESS_TOKEN are required for PUSH_BACKEND=fcm")
        if self.push_backend not in ("log", "fcm"):
            problems.append(f"Unknown PUSH_BACKEND: {self.push_backend}")
        return problems

    def ensure_valid(self) -> "Settings":
        """Raise ConfigError listing every problem, or return self."""
        problems = self.validate()
        if problems:
            raise ConfigError("; ".join(problems))
        return self
