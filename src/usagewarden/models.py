import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from usagewarden.tier import AccountTier

DEFAULT_USAGE_THRESHOLDS: "tuple[float, ...]" = (75.0, 90.0, 95.0)
DEFAULT_BUDGET_THRESHOLDS: "tuple[float, ...]" = (50.0, 75.0, 90.0)
DEFAULT_REFRESH_INTERVAL: "float" = 30.0


class WindowKind(str, Enum):
    SESSION = "session"
    WEEKLY = "weekly"
    BILLING_CYCLE = "billing_cycle"


class SourceKind(str, Enum):
    WEB = "web"
    API_CONSOLE = "api_console"
    CLI_OAUTH = "cli_oauth"


# windows each credential source is able to report
SOURCE_WINDOWS: "dict[SourceKind, tuple[WindowKind, ...]]" = {
    SourceKind.WEB: (WindowKind.SESSION, WindowKind.WEEKLY),
    SourceKind.API_CONSOLE: (WindowKind.BILLING_CYCLE,),
    SourceKind.CLI_OAUTH: (WindowKind.SESSION, WindowKind.WEEKLY),
}


def utcnow() -> "datetime":
    return datetime.now(timezone.utc)


def to_iso(value: "datetime | None") -> "str | None":
    if value is None:
        return None
    return value.isoformat()


def from_iso(value: "str | None") -> "datetime | None":
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def clamp_percentage(value: "float") -> "float":
    return max(0.0, min(100.0, float(value)))


@dataclass(frozen=True, slots=True)
class CredentialSource:
    """
    CredentialSource is one credential a profile can fetch usage with.
    The handle is opaque: secure storage lives outside this package.
    """

    kind: "SourceKind"
    handle: "str"
    # false when the credential is known to be expired or revoked
    usable: "bool" = True

    @property
    def provides_session(self) -> "bool":
        return WindowKind.SESSION in SOURCE_WINDOWS[self.kind]

    def to_dict(self) -> "dict[str, Any]":
        return {"kind": self.kind.value, "handle": self.handle, "usable": self.usable}

    @classmethod
    def from_dict(cls, data: "dict[str, Any]") -> "CredentialSource":
        return cls(
            kind=SourceKind(data["kind"]),
            handle=str(data["handle"]),
            usable=bool(data.get("usable", True)),
        )


@dataclass(frozen=True, slots=True)
class SessionWindow:
    """
    the short rolling session window (five hours upstream).
    """

    tokens_used: "int"
    limit: "int"
    percentage: "float"
    reset_at: "datetime"

    def __post_init__(self) -> "None":
        object.__setattr__(self, "percentage", clamp_percentage(self.percentage))


@dataclass(frozen=True, slots=True)
class ModelUsage:
    # e.g. "opus" or "sonnet"
    model: "str"
    tokens_used: "int"
    percentage: "float"

    def __post_init__(self) -> "None":
        object.__setattr__(self, "percentage", clamp_percentage(self.percentage))


@dataclass(frozen=True, slots=True)
class WeeklyWindow:
    """
    the weekly window, optionally broken down per model.
    """

    tokens_used: "int"
    limit: "int"
    percentage: "float"
    reset_at: "datetime"
    models: "tuple[ModelUsage, ...]" = ()

    def __post_init__(self) -> "None":
        object.__setattr__(self, "percentage", clamp_percentage(self.percentage))


@dataclass(frozen=True, slots=True)
class BillingWindow:
    """
    the monthly billing cycle reported by the API console. reset_at
    is the cycle boundary.
    """

    spend_cents: "int"
    prepaid_credits_cents: "int | None"
    currency: "str"
    reset_at: "datetime"


@dataclass(frozen=True, slots=True)
class UsageReading:
    """
    UsageReading is the normalized view of a profile's usage at one
    point in time. A window is None when no source has reported it yet.
    """

    fetched_at: "datetime"
    session: "SessionWindow | None" = None
    weekly: "WeeklyWindow | None" = None
    billing: "BillingWindow | None" = None
    # capability strings reported alongside the reading, used for tier resolution
    capabilities: "frozenset[str] | None" = None

    def window(
        self, kind: "WindowKind"
    ) -> "SessionWindow | WeeklyWindow | BillingWindow | None":
        if kind is WindowKind.SESSION:
            return self.session
        if kind is WindowKind.WEEKLY:
            return self.weekly
        return self.billing

    def reset_at(self, kind: "WindowKind") -> "datetime | None":
        w = self.window(kind)
        return None if w is None else w.reset_at

    def percentage(
        self,
        kind: "WindowKind",
        monthly_budget: "float | None" = None,
    ) -> "float | None":
        """
        returns the utilization of a window. The billing cycle only has
        a percentage relative to a monthly budget (in currency units).
        """
        if kind is WindowKind.BILLING_CYCLE:
            if self.billing is None or not monthly_budget:
                return None
            spent = self.billing.spend_cents / 100.0
            return clamp_percentage(spent / monthly_budget * 100.0)

        w = self.window(kind)
        return None if w is None else w.percentage

    def with_window(
        self,
        kind: "WindowKind",
        value: "SessionWindow | WeeklyWindow | BillingWindow | None",
    ) -> "UsageReading":
        if kind is WindowKind.SESSION:
            return replace(self, session=value)
        if kind is WindowKind.WEEKLY:
            return replace(self, weekly=value)
        return replace(self, billing=value)

    def to_dict(self) -> "dict[str, Any]":
        data: "dict[str, Any]" = {"fetched_at": to_iso(self.fetched_at)}
        if self.session is not None:
            data["session"] = {
                "tokens_used": self.session.tokens_used,
                "limit": self.session.limit,
                "percentage": self.session.percentage,
                "reset_at": to_iso(self.session.reset_at),
            }
        if self.weekly is not None:
            data["weekly"] = {
                "tokens_used": self.weekly.tokens_used,
                "limit": self.weekly.limit,
                "percentage": self.weekly.percentage,
                "reset_at": to_iso(self.weekly.reset_at),
                "models": [
                    {
                        "model": m.model,
                        "tokens_used": m.tokens_used,
                        "percentage": m.percentage,
                    }
                    for m in self.weekly.models
                ],
            }
        if self.billing is not None:
            data["billing"] = {
                "spend_cents": self.billing.spend_cents,
                "prepaid_credits_cents": self.billing.prepaid_credits_cents,
                "currency": self.billing.currency,
                "reset_at": to_iso(self.billing.reset_at),
            }
        if self.capabilities is not None:
            data["capabilities"] = sorted(self.capabilities)
        return data

    @classmethod
    def from_dict(cls, data: "dict[str, Any]") -> "UsageReading":
        session = weekly = billing = None

        s = data.get("session")
        if s is not None:
            session = SessionWindow(
                tokens_used=int(s.get("tokens_used", 0)),
                limit=int(s.get("limit", 0)),
                percentage=float(s.get("percentage", 0.0)),
                reset_at=from_iso(s["reset_at"]),
            )

        w = data.get("weekly")
        if w is not None:
            weekly = WeeklyWindow(
                tokens_used=int(w.get("tokens_used", 0)),
                limit=int(w.get("limit", 0)),
                percentage=float(w.get("percentage", 0.0)),
                reset_at=from_iso(w["reset_at"]),
                models=tuple(
                    ModelUsage(
                        model=str(m["model"]),
                        tokens_used=int(m.get("tokens_used", 0)),
                        percentage=float(m.get("percentage", 0.0)),
                    )
                    for m in w.get("models", [])
                ),
            )

        b = data.get("billing")
        if b is not None:
            prepaid = b.get("prepaid_credits_cents")
            billing = BillingWindow(
                spend_cents=int(b.get("spend_cents", 0)),
                prepaid_credits_cents=None if prepaid is None else int(prepaid),
                currency=str(b.get("currency", "USD")),
                reset_at=from_iso(b["reset_at"]),
            )

        capabilities = data.get("capabilities")
        return cls(
            fetched_at=from_iso(data.get("fetched_at")) or utcnow(),
            session=session,
            weekly=weekly,
            billing=billing,
            capabilities=None if capabilities is None else frozenset(capabilities),
        )


@dataclass(frozen=True, slots=True)
class ResetEvent:
    """
    ResetEvent describes one window that closed between two readings.
    previous holds the closing values of that window, not the values
    of the freshly reset one.
    """

    window_kind: "WindowKind"
    # the reset time of the window that just ended
    reset_at: "datetime"
    previous: "UsageReading"


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    """
    UsageSnapshot is the persisted, immutable record of a window's
    final values at the moment it reset. Only the fields of its own
    window kind are populated.
    """

    timestamp: "datetime"
    window_kind: "WindowKind"
    triggering_reset_time: "datetime"
    id: "str" = field(default_factory=lambda: str(uuid.uuid4()))

    session_tokens_used: "int | None" = None
    session_percentage: "float | None" = None

    weekly_tokens_used: "int | None" = None
    weekly_percentage: "float | None" = None
    model_breakdown: "tuple[ModelUsage, ...] | None" = None

    api_spend_cents: "int | None" = None
    api_prepaid_credits_cents: "int | None" = None
    api_currency: "str | None" = None

    @classmethod
    def from_reset(
        cls, event: "ResetEvent", timestamp: "datetime"
    ) -> "UsageSnapshot":
        reading = event.previous
        kind = event.window_kind

        if kind is WindowKind.SESSION and reading.session is not None:
            return cls(
                timestamp=timestamp,
                window_kind=kind,
                triggering_reset_time=event.reset_at,
                session_tokens_used=reading.session.tokens_used,
                session_percentage=reading.session.percentage,
            )
        if kind is WindowKind.WEEKLY and reading.weekly is not None:
            return cls(
                timestamp=timestamp,
                window_kind=kind,
                triggering_reset_time=event.reset_at,
                weekly_tokens_used=reading.weekly.tokens_used,
                weekly_percentage=reading.weekly.percentage,
                model_breakdown=reading.weekly.models or None,
            )
        if kind is WindowKind.BILLING_CYCLE and reading.billing is not None:
            return cls(
                timestamp=timestamp,
                window_kind=kind,
                triggering_reset_time=event.reset_at,
                api_spend_cents=reading.billing.spend_cents,
                api_prepaid_credits_cents=reading.billing.prepaid_credits_cents,
                api_currency=reading.billing.currency,
            )
        raise ValueError(f"reset event for {kind.value} carries no {kind.value} data")

    @property
    def has_usage(self) -> "bool":
        """
        false when the closed window never saw any usage.
        """
        if self.window_kind is WindowKind.SESSION:
            return bool(self.session_tokens_used) or bool(self.session_percentage)
        if self.window_kind is WindowKind.WEEKLY:
            return bool(self.weekly_tokens_used) or bool(self.weekly_percentage)
        return bool(self.api_spend_cents)

    def to_dict(self) -> "dict[str, Any]":
        breakdown = None
        if self.model_breakdown is not None:
            breakdown = {
                m.model: {"percentage": m.percentage, "tokens_used": m.tokens_used}
                for m in self.model_breakdown
            }
        return {
            "id": self.id,
            "timestamp": to_iso(self.timestamp),
            "window_kind": self.window_kind.value,
            "triggering_reset_time": to_iso(self.triggering_reset_time),
            "session_tokens_used": self.session_tokens_used,
            "session_percentage": self.session_percentage,
            "weekly_tokens_used": self.weekly_tokens_used,
            "weekly_percentage": self.weekly_percentage,
            "model_breakdown": breakdown,
            "api_spend_cents": self.api_spend_cents,
            "api_prepaid_credits_cents": self.api_prepaid_credits_cents,
            "api_currency": self.api_currency,
        }

    @classmethod
    def from_dict(cls, data: "dict[str, Any]") -> "UsageSnapshot":
        breakdown = data.get("model_breakdown")
        return cls(
            id=str(data["id"]),
            timestamp=from_iso(data["timestamp"]),
            window_kind=WindowKind(data["window_kind"]),
            triggering_reset_time=from_iso(data["triggering_reset_time"]),
            session_tokens_used=data.get("session_tokens_used"),
            session_percentage=data.get("session_percentage"),
            weekly_tokens_used=data.get("weekly_tokens_used"),
            weekly_percentage=data.get("weekly_percentage"),
            model_breakdown=None
            if breakdown is None
            else tuple(
                ModelUsage(
                    model=name,
                    tokens_used=int(values.get("tokens_used", 0)),
                    percentage=float(values.get("percentage", 0.0)),
                )
                for name, values in sorted(breakdown.items())
            ),
            api_spend_cents=data.get("api_spend_cents"),
            api_prepaid_credits_cents=data.get("api_prepaid_credits_cents"),
            api_currency=data.get("api_currency"),
        )


@dataclass(frozen=True, slots=True)
class BehaviorConfig:
    # seconds between refresh ticks, within [5, 120]
    refresh_interval: "float" = DEFAULT_REFRESH_INTERVAL
    auto_start_session_enabled: "bool" = False
    auto_rotate_enabled: "bool" = False
    check_overage_enabled: "bool" = True


@dataclass(frozen=True, slots=True)
class NotificationConfig:
    enabled: "bool" = True
    thresholds: "tuple[float, ...]" = DEFAULT_USAGE_THRESHOLDS


@dataclass(frozen=True, slots=True)
class BudgetConfig:
    # in the billing currency, None disables budget alerts
    monthly_budget: "float | None" = None
    thresholds: "tuple[float, ...]" = DEFAULT_BUDGET_THRESHOLDS


@dataclass(frozen=True, slots=True)
class Profile:
    """
    Profile is one tracked account. Instances are immutable: the
    profile store hands out a fresh snapshot every tick and receives
    replacements through save().
    """

    id: "str"
    name: "str"
    credentials: "tuple[CredentialSource, ...]" = ()
    behavior: "BehaviorConfig" = field(default_factory=BehaviorConfig)
    notifications: "NotificationConfig" = field(default_factory=NotificationConfig)
    budget: "BudgetConfig" = field(default_factory=BudgetConfig)
    account_tier: "AccountTier | None" = None
    is_active_for_display: "bool" = False
    enabled: "bool" = True
    last_used_at: "datetime | None" = None
    cached_reading: "UsageReading | None" = None

    @property
    def usable_sources(self) -> "tuple[CredentialSource, ...]":
        return tuple(c for c in self.credentials if c.usable)

    @property
    def has_usable_credentials(self) -> "bool":
        return bool(self.usable_sources)

    @property
    def has_session_credentials(self) -> "bool":
        """
        true when the profile can report session usage, which auto
        rotation requires.
        """
        return any(c.provides_session for c in self.usable_sources)

    def to_dict(self) -> "dict[str, Any]":
        return {
            "id": self.id,
            "name": self.name,
            "credentials": [c.to_dict() for c in self.credentials],
            "behavior": {
                "refresh_interval": self.behavior.refresh_interval,
                "auto_start_session_enabled": self.behavior.auto_start_session_enabled,
                "auto_rotate_enabled": self.behavior.auto_rotate_enabled,
                "check_overage_enabled": self.behavior.check_overage_enabled,
            },
            "notifications": {
                "enabled": self.notifications.enabled,
                "thresholds": list(self.notifications.thresholds),
            },
            "budget": {
                "monthly_budget": self.budget.monthly_budget,
                "thresholds": list(self.budget.thresholds),
            },
            "account_tier": (
                None if self.account_tier is None else self.account_tier.value
            ),
            "is_active_for_display": self.is_active_for_display,
            "enabled": self.enabled,
            "last_used_at": to_iso(self.last_used_at),
            "cached_reading": None
            if self.cached_reading is None
            else self.cached_reading.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: "dict[str, Any]") -> "Profile":
        behavior = data.get("behavior", {})
        notifications = data.get("notifications", {})
        budget = data.get("budget", {})
        tier = data.get("account_tier")
        cached = data.get("cached_reading")
        monthly_budget = budget.get("monthly_budget")

        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            credentials=tuple(
                CredentialSource.from_dict(c) for c in data.get("credentials", [])
            ),
            behavior=BehaviorConfig(
                refresh_interval=float(
                    behavior.get("refresh_interval", DEFAULT_REFRESH_INTERVAL)
                ),
                auto_start_session_enabled=bool(
                    behavior.get("auto_start_session_enabled", False)
                ),
                auto_rotate_enabled=bool(behavior.get("auto_rotate_enabled", False)),
                check_overage_enabled=bool(behavior.get("check_overage_enabled", True)),
            ),
            notifications=NotificationConfig(
                enabled=bool(notifications.get("enabled", True)),
                thresholds=tuple(
                    float(t)
                    for t in notifications.get("thresholds", DEFAULT_USAGE_THRESHOLDS)
                ),
            ),
            budget=BudgetConfig(
                monthly_budget=(
                    None if monthly_budget is None else float(monthly_budget)
                ),
                thresholds=tuple(
                    float(t)
                    for t in budget.get("thresholds", DEFAULT_BUDGET_THRESHOLDS)
                ),
            ),
            account_tier=None if tier is None else AccountTier(tier),
            is_active_for_display=bool(data.get("is_active_for_display", False)),
            enabled=bool(data.get("enabled", True)),
            last_used_at=from_iso(data.get("last_used_at")),
            cached_reading=None if cached is None else UsageReading.from_dict(cached),
        )


class EventKind(str, Enum):
    THRESHOLD = "threshold"
    AUTO_START_REQUESTED = "auto-start-requested"
    ACTIVATED = "activated"


@dataclass(frozen=True, slots=True)
class ThresholdCrossing:
    window_kind: "WindowKind"
    threshold: "float"
    percentage: "float"


@dataclass(frozen=True, slots=True)
class NotificationEvent:
    """
    NotificationEvent is what the coordinator hands to a notification
    sink. Window, threshold and percentage are only set for threshold
    events.
    """

    profile_id: "str"
    kind: "EventKind"
    window_kind: "WindowKind | None" = None
    threshold: "float | None" = None
    percentage: "float | None" = None

    def to_dict(self) -> "dict[str, Any]":
        return {
            "profile_id": self.profile_id,
            "kind": self.kind.value,
            "window_kind": None if self.window_kind is None else self.window_kind.value,
            "threshold": self.threshold,
            "percentage": self.percentage,
        }
