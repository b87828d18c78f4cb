from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

import structlog

from usagewarden.models import Profile, UsageReading
from usagewarden.tier import AccountTier

logger = structlog.get_logger()

DEFAULT_COOLDOWN = timedelta(minutes=5)

# profiles that were never used sort before every used one
_NEVER_USED = datetime.min.replace(tzinfo=timezone.utc)


def is_exhausted(
    reading: "UsageReading | None", session_threshold: "float" = 100.0
) -> "bool":
    """
    a profile is exhausted when its session has no headroom left or
    its weekly limit is hit.
    """
    if reading is None:
        return False
    session = (
        reading.session is not None
        and reading.session.percentage >= session_threshold
    )
    weekly = reading.weekly is not None and reading.weekly.percentage >= 100.0
    return session or weekly


def tier_weight(profile: "Profile") -> "float":
    # an unresolved tier is treated as paid until the first fetch says otherwise
    return (profile.account_tier or AccountTier.PRO).weight


def select_next(
    profiles: "Sequence[Profile]",
    current: "Profile",
) -> "Profile | None":
    """
    picks the rotation target among the other opted-in profiles that
    can report session usage and still have headroom in their last
    known reading: the highest tier weight wins, ties go to the
    profile used longest ago. Returns None when nobody qualifies.
    """
    candidates = [
        p
        for p in profiles
        if p.id != current.id
        and p.enabled
        and p.behavior.auto_rotate_enabled
        and p.has_session_credentials
        and not is_exhausted(p.cached_reading)
    ]
    if not candidates:
        return None

    # max() keeps the first of equal keys, so order by recency first
    candidates.sort(key=lambda p: p.last_used_at or _NEVER_USED)
    return max(candidates, key=tier_weight)


class AutoRotationSelector:
    """
    AutoRotationSelector wraps select_next() with the guards that keep
    rotation from flapping: the active profile must itself be opted
    in, and rotations are spaced by a cooldown.
    """

    def __init__(
        self,
        cooldown: "timedelta" = DEFAULT_COOLDOWN,
        session_threshold: "float" = 100.0,
    ) -> "None":
        self._cooldown = cooldown
        self._session_threshold = session_threshold
        self._last_rotation: "datetime | None" = None

    def needs_rotation(
        self, current: "Profile", reading: "UsageReading | None"
    ) -> "bool":
        if not current.behavior.auto_rotate_enabled:
            return False
        if not current.has_session_credentials:
            return True
        return is_exhausted(reading, self._session_threshold)

    def cooldown_active(self, now: "datetime") -> "bool":
        if self._last_rotation is None:
            return False
        return now - self._last_rotation < self._cooldown

    def select_next(
        self,
        profiles: "Sequence[Profile]",
        current: "Profile",
        now: "datetime",
    ) -> "Profile | None":
        if self.cooldown_active(now):
            logger.debug("rotation_cooldown_active", profile_id=current.id)
            return None

        target = select_next(profiles, current)
        if target is None:
            logger.info("rotation_no_eligible_profile", profile_id=current.id)
        return target

    def record_rotation(self, now: "datetime") -> "None":
        self._last_rotation = now
