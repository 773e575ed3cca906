"""Runtime configuration loaded from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from aeo_client.services.features import FEATURES


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number.") from exc


def _env_int(name: str, default: int) -> int:
    """Parse an integer environment variable, falling back to `default` when unset."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer.") from exc


def _feature_env_prefix(name: str) -> str:
    return "AEO_" + name.upper().replace("-", "_")


@dataclass
class PollingSettings:
    """Cadence for one feature. The values are tuning knobs, not semantics."""

    interval: float
    max_attempts: int


@dataclass
class Settings:
    api_base_url: Optional[str] = None
    auth_token: Optional[str] = None
    api_email: Optional[str] = None
    api_password: Optional[str] = None
    http_timeout: float = 30.0
    max_wall_clock: float = 600.0
    backoff_cap: float = 30.0
    polling: Dict[str, PollingSettings] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> Settings:
        polling = {}
        for name, feature in FEATURES.items():
            prefix = _feature_env_prefix(name)
            polling[name] = PollingSettings(
                interval=_env_float(f"{prefix}_POLL_INTERVAL", feature.poll_interval),
                max_attempts=_env_int(f"{prefix}_MAX_ATTEMPTS", feature.max_attempts),
            )
        return cls(
            api_base_url=os.getenv("AEO_API_BASE_URL"),
            auth_token=os.getenv("AEO_AUTH_TOKEN"),
            api_email=os.getenv("AEO_API_EMAIL"),
            api_password=os.getenv("AEO_API_PASSWORD"),
            http_timeout=_env_float("AEO_HTTP_TIMEOUT", 30.0),
            max_wall_clock=_env_float("AEO_POLL_MAX_WALL_CLOCK", 600.0),
            backoff_cap=_env_float("AEO_RATE_LIMIT_BACKOFF_CAP", 30.0),
            polling=polling,
        )

    def polling_for(self, name: str) -> PollingSettings:
        if name in self.polling:
            return self.polling[name]
        feature = FEATURES[name]
        return PollingSettings(interval=feature.poll_interval, max_attempts=feature.max_attempts)
