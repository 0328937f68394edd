from __future__ import annotations

import os
from dataclasses import dataclass


DEFAULT_TIMEZONE = "UTC"
DEFAULT_PHONE_REGION = "US"

_TRUTHY = {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class MatchSettings:
    timezone: str
    phone_region: str
    exclusive_address: bool


def get_match_settings() -> MatchSettings:
    timezone = os.environ.get("CACHE_TIMEZONE", DEFAULT_TIMEZONE).strip() or DEFAULT_TIMEZONE
    phone_region = os.environ.get("CACHE_PHONE_REGION", DEFAULT_PHONE_REGION).strip().upper() or DEFAULT_PHONE_REGION
    exclusive_address = str(os.environ.get("CACHE_EXCLUSIVE_ADDRESS", "false")).strip().lower() in _TRUTHY
    return MatchSettings(
        timezone=timezone,
        phone_region=phone_region,
        exclusive_address=exclusive_address,
    )
