import math
import os
from collections.abc import Sequence
from dataclasses import dataclass

from usagewarden.errors import ConfigurationError
from usagewarden.models import Profile

MIN_REFRESH_INTERVAL = 5.0
MAX_REFRESH_INTERVAL = 120.0


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186"
    listen_address: "str" = ":9186"
    log_level: "str" = "info"
    # "console" or "json"
    log_format: "str" = "console"
    # per-source fetch timeout in seconds
    fetch_timeout: "float" = 10.0
    auto_rotate: "bool" = False

    profiles_path: "str" = "profiles.json"
    history_dir: "str" = "history"
    readings_dir: "str" = "readings"
    webhook_url: "str" = ""

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            profiles_path=os.environ.get("USAGEWARDEN_PROFILES_PATH", "profiles.json"),
            history_dir=os.environ.get("USAGEWARDEN_HISTORY_DIR", "history"),
            readings_dir=os.environ.get("USAGEWARDEN_READINGS_DIR", "readings"),
            webhook_url=os.environ.get("USAGEWARDEN_WEBHOOK_URL", ""),
            auto_rotate=os.environ.get("USAGEWARDEN_AUTO_ROTATE", "").lower()
            in ("1", "true", "yes"),
        )

    @property
    def webhook_enabled(self) -> "bool":
        return bool(self.webhook_url)


def validate_refresh_interval(seconds: "float") -> "float":
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        raise ConfigurationError(f"refresh interval must be a number, got {seconds!r}")
    if math.isnan(seconds) or not (
        MIN_REFRESH_INTERVAL <= seconds <= MAX_REFRESH_INTERVAL
    ):
        raise ConfigurationError(
            f"refresh interval must be within "
            f"[{MIN_REFRESH_INTERVAL:g}, {MAX_REFRESH_INTERVAL:g}] seconds, "
            f"got {seconds}"
        )
    return float(seconds)


def validate_thresholds(
    thresholds: "Sequence[float]", name: "str" = "thresholds"
) -> "tuple[float, ...]":
    """
    thresholds must be non-empty, strictly ascending (and so distinct)
    and each within (0, 100].
    """
    values = tuple(thresholds)
    if not values:
        raise ConfigurationError(f"{name} must not be empty")

    for value in values:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"{name} must be numbers, got {value!r}")
        if math.isnan(value) or not 0 < value <= 100:
            raise ConfigurationError(f"{name} must be within (0, 100], got {value}")

    for lower, upper in zip(values, values[1:]):
        if upper <= lower:
            raise ConfigurationError(
                f"{name} must be strictly ascending, got {list(values)}"
            )

    return tuple(float(v) for v in values)


def validate_budget(monthly_budget: "float | None") -> "float | None":
    if monthly_budget is None:
        return None
    if isinstance(monthly_budget, bool) or not isinstance(monthly_budget, (int, float)):
        raise ConfigurationError(
            f"monthly budget must be a number, got {monthly_budget!r}"
        )
    if math.isnan(monthly_budget) or monthly_budget <= 0:
        raise ConfigurationError(
            f"monthly budget must be positive, got {monthly_budget}"
        )
    return float(monthly_budget)


def validate_profile(profile: "Profile") -> "Profile":
    """
    checks every user-editable setting of a profile, raising
    ConfigurationError on the first malformed one.
    """
    validate_refresh_interval(profile.behavior.refresh_interval)
    validate_thresholds(profile.notifications.thresholds, "notification thresholds")
    validate_budget(profile.budget.monthly_budget)
    validate_thresholds(profile.budget.thresholds, "budget thresholds")
    return profile
