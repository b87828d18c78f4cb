import pytest

from usagewarden.config import (
    Config,
    validate_budget,
    validate_profile,
    validate_refresh_interval,
    validate_thresholds,
)
from usagewarden.errors import ConfigurationError
from usagewarden.models import BehaviorConfig, BudgetConfig, NotificationConfig, Profile


class TestConfigFromEnv:
    def test_defaults(self, monkeypatch: "object") -> "None":
        for name in (
            "USAGEWARDEN_PROFILES_PATH",
            "USAGEWARDEN_HISTORY_DIR",
            "USAGEWARDEN_READINGS_DIR",
            "USAGEWARDEN_WEBHOOK_URL",
            "USAGEWARDEN_AUTO_ROTATE",
        ):
            monkeypatch.delenv(name, raising=False)
        config = Config.from_env()
        assert config.profiles_path == "profiles.json"
        assert config.history_dir == "history"
        assert config.readings_dir == "readings"
        assert config.webhook_url == ""
        assert config.auto_rotate is False

    def test_reads_env_vars(self, monkeypatch: "object") -> "None":
        monkeypatch.setenv("USAGEWARDEN_PROFILES_PATH", "/etc/uw/profiles.json")
        monkeypatch.setenv("USAGEWARDEN_HISTORY_DIR", "/var/lib/uw/history")
        monkeypatch.setenv("USAGEWARDEN_READINGS_DIR", "/run/uw")
        monkeypatch.setenv("USAGEWARDEN_WEBHOOK_URL", "https://hooks.example.com/uw")
        monkeypatch.setenv("USAGEWARDEN_AUTO_ROTATE", "true")
        config = Config.from_env()
        assert config.profiles_path == "/etc/uw/profiles.json"
        assert config.history_dir == "/var/lib/uw/history"
        assert config.readings_dir == "/run/uw"
        assert config.webhook_url == "https://hooks.example.com/uw"
        assert config.auto_rotate is True


class TestWebhookEnabled:
    def test_enabled_when_url_set(self) -> "None":
        assert Config(webhook_url="https://hooks.example.com").webhook_enabled is True

    def test_disabled_when_url_empty(self) -> "None":
        assert Config(webhook_url="").webhook_enabled is False


class TestValidateRefreshInterval:
    @pytest.mark.parametrize("seconds", [5, 30.0, 120])
    def test_accepts_bounds(self, seconds: "float") -> "None":
        assert validate_refresh_interval(seconds) == float(seconds)

    @pytest.mark.parametrize("seconds", [4.9, 121, 0, -30, float("nan"), "30", True])
    def test_rejects(self, seconds: "object") -> "None":
        with pytest.raises(ConfigurationError):
            validate_refresh_interval(seconds)


class TestValidateThresholds:
    def test_accepts_ascending(self) -> "None":
        assert validate_thresholds([75, 90, 95]) == (75.0, 90.0, 95.0)

    def test_accepts_hundred(self) -> "None":
        assert validate_thresholds([100]) == (100.0,)

    @pytest.mark.parametrize(
        "thresholds",
        [[], [0], [101], [90, 75], [75, 75], [-5, 50], ["75"]],
    )
    def test_rejects(self, thresholds: "list") -> "None":
        with pytest.raises(ConfigurationError):
            validate_thresholds(thresholds)

    def test_error_names_setting(self) -> "None":
        with pytest.raises(ConfigurationError, match="budget thresholds"):
            validate_thresholds([], "budget thresholds")


class TestValidateBudget:
    def test_none_disables(self) -> "None":
        assert validate_budget(None) is None

    def test_positive(self) -> "None":
        assert validate_budget(250) == 250.0

    @pytest.mark.parametrize("budget", [0, -10, float("nan")])
    def test_rejects(self, budget: "float") -> "None":
        with pytest.raises(ConfigurationError):
            validate_budget(budget)


class TestValidateProfile:
    def test_valid(self) -> "None":
        profile = Profile(id="p1", name="Work")
        assert validate_profile(profile) is profile

    def test_bad_interval(self) -> "None":
        profile = Profile(
            id="p1", name="Work", behavior=BehaviorConfig(refresh_interval=1)
        )
        with pytest.raises(ConfigurationError):
            validate_profile(profile)

    def test_bad_notification_thresholds(self) -> "None":
        profile = Profile(
            id="p1",
            name="Work",
            notifications=NotificationConfig(thresholds=(90.0, 80.0)),
        )
        with pytest.raises(ConfigurationError, match="notification thresholds"):
            validate_profile(profile)

    def test_bad_budget(self) -> "None":
        profile = Profile(id="p1", name="Work", budget=BudgetConfig(monthly_budget=-1))
        with pytest.raises(ConfigurationError):
            validate_profile(profile)
