"""
Access-control configuration loader.

Settings come from three layers, later layers winning:
  1. Defaults on AccessControlConfig
  2. Optional YAML file at ACCESS_CONTROL_CONFIG_PATH
  3. Environment variables (FACILITY_LAT, MAX_DISTANCE_METERS, ...)

YAML keys may use either snake_case or the camelCase option names used by
the client apps (facilityLat, facilityLng, maxDistanceMeters,
gracePeriodPolicy, qrTokenTTL).

Usage:
    from gymaccess.config.access_control import get_access_control_config

    config = get_access_control_config()
    radius = config.max_distance_meters
"""

import logging
import os
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

# Approximate facility coordinate (SE8 5FE)
DEFAULT_FACILITY_LAT = 51.4881
DEFAULT_FACILITY_LNG = -0.0300


class GracePeriodPolicy(str, Enum):
    """
    What a cancellation request does to a non-managed membership.

    PERIOD_END keeps access until end_date (primary contract).
    IMMEDIATE ends the membership at once (legacy behaviour).
    Managed subscriptions always run to the end of the paid period.
    """
    PERIOD_END = "period_end"
    IMMEDIATE = "immediate"


class EndDatePolicy(str, Enum):
    """How a new membership's end_date is derived from the plan."""
    FIXED_DAYS = "fixed_days"
    MONTHLY_ANCHOR = "monthly_anchor"


class AccessControlConfig(BaseModel):
    """Recognized configuration options."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    facility_lat: float = Field(DEFAULT_FACILITY_LAT, alias="facilityLat", ge=-90, le=90)
    facility_lng: float = Field(DEFAULT_FACILITY_LNG, alias="facilityLng", ge=-180, le=180)
    max_distance_meters: float = Field(100.0, alias="maxDistanceMeters", gt=0)
    grace_period_policy: GracePeriodPolicy = Field(
        GracePeriodPolicy.PERIOD_END, alias="gracePeriodPolicy"
    )
    qr_token_ttl_seconds: int = Field(300, alias="qrTokenTTL", gt=0)
    qr_signing_secret: str = Field("", alias="qrSigningSecret")
    end_date_policy: EndDatePolicy = Field(EndDatePolicy.FIXED_DAYS, alias="endDatePolicy")

    # Shared rate limiter (per user, per action)
    rate_limit_requests: int = Field(10, alias="rateLimitRequests", gt=0)
    rate_limit_window_seconds: int = Field(60, alias="rateLimitWindowSeconds", gt=0)

    @field_validator("grace_period_policy", "end_date_policy", mode="before")
    @classmethod
    def _normalize_enum(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


# Environment variable -> config field
_ENV_VARS = {
    "FACILITY_LAT": "facility_lat",
    "FACILITY_LNG": "facility_lng",
    "MAX_DISTANCE_METERS": "max_distance_meters",
    "GRACE_PERIOD_POLICY": "grace_period_policy",
    "QR_TOKEN_TTL_SECONDS": "qr_token_ttl_seconds",
    "QR_SIGNING_SECRET": "qr_signing_secret",
    "MEMBERSHIP_END_DATE_POLICY": "end_date_policy",
    "RATE_LIMIT_REQUESTS": "rate_limit_requests",
    "RATE_LIMIT_WINDOW_SECONDS": "rate_limit_window_seconds",
}


def _read_yaml(path: Path) -> Dict[str, Any]:
    logger.info("Loading access control config from %s", path)
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Access control config must be a mapping: {path}")
    return raw.get("access_control", raw)


def load_access_control_config(config_path: Optional[str] = None) -> AccessControlConfig:
    """Build a config from defaults, the optional YAML file and the environment."""
    values: Dict[str, Any] = {}

    path = config_path or os.getenv("ACCESS_CONTROL_CONFIG_PATH")
    if path:
        values.update(_read_yaml(Path(path)))

    for env_var, field_name in _ENV_VARS.items():
        value = os.getenv(env_var)
        if value is not None and value != "":
            # Drop any camelCase spelling from YAML so the env value wins
            alias = AccessControlConfig.model_fields[field_name].alias
            values.pop(alias, None)
            values[field_name] = value

    config = AccessControlConfig(**values)

    if not config.qr_signing_secret:
        logger.warning("QR_SIGNING_SECRET not set; QR entry tokens cannot be issued")

    return config


_config: Optional[AccessControlConfig] = None
_lock = Lock()


def get_access_control_config() -> AccessControlConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        with _lock:
            if _config is None:
                _config = load_access_control_config()
    return _config


def reset_access_control_config() -> None:
    """Reset singleton (for tests only)."""
    global _config
    _config = None
