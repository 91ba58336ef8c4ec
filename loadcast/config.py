"""Engine configuration with environment-specific profiles.

Supports dev, staging, and production environments via APP_ENV.
All values can be overridden by environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    """Immutable engine settings resolved from environment."""

    app_env: str = "dev"
    log_level: str = "INFO"

    # Numeric policy
    policy_version: str = "2024.1"
    decimal_places: int = 4

    # Request limits
    max_goals: int = 10
    max_window_days: int = 364
    max_history_days: int = 730

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"


# -- Environment profiles --

_ENV_PROFILES: dict[str, dict] = {
    "dev": {
        "log_level": "DEBUG",
    },
    "staging": {
        "log_level": "INFO",
    },
    "production": {
        "log_level": "WARNING",
        "max_goals": 8,
    },
}


def get_settings() -> Settings:
    """Build Settings by merging environment profile with env-var overrides."""
    app_env = os.getenv("APP_ENV", "dev")
    profile = _ENV_PROFILES.get(app_env, _ENV_PROFILES["dev"])

    return Settings(
        app_env=app_env,
        log_level=os.getenv("LOG_LEVEL", profile.get("log_level", "INFO")),
        policy_version=os.getenv("LOADCAST_POLICY_VERSION", profile.get("policy_version", "2024.1")),
        decimal_places=int(os.getenv("LOADCAST_DECIMAL_PLACES", str(profile.get("decimal_places", 4)))),
        max_goals=int(os.getenv("LOADCAST_MAX_GOALS", str(profile.get("max_goals", 10)))),
        max_window_days=int(os.getenv("LOADCAST_MAX_WINDOW_DAYS", str(profile.get("max_window_days", 364)))),
        max_history_days=int(os.getenv("LOADCAST_MAX_HISTORY_DAYS", str(profile.get("max_history_days", 730)))),
    )
