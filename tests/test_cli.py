from usagewarden.__main__ import _parse_listen_address
from usagewarden.cli import parse_args


class TestParseArgs:
    def test_defaults(self, monkeypatch: "object") -> "None":
        monkeypatch.delenv("USAGEWARDEN_PROFILES_PATH", raising=False)
        monkeypatch.delenv("USAGEWARDEN_AUTO_ROTATE", raising=False)
        config = parse_args([])
        assert config.listen_address == ":9186"
        assert config.fetch_timeout == 10.0
        assert config.log_level == "info"
        assert config.log_format == "console"
        assert config.profiles_path == "profiles.json"
        assert config.auto_rotate is False

    def test_flags(self) -> "None":
        config = parse_args(
            [
                "--web.listen-address",
                "127.0.0.1:9999",
                "--fetch.timeout",
                "2.5",
                "--log.level",
                "debug",
                "--log.format",
                "json",
                "--history.dir",
                "/tmp/history",
                "--auto-rotate",
            ]
        )
        assert config.listen_address == "127.0.0.1:9999"
        assert config.fetch_timeout == 2.5
        assert config.log_level == "debug"
        assert config.log_format == "json"
        assert config.history_dir == "/tmp/history"
        assert config.auto_rotate is True

    def test_flag_overrides_env(self, monkeypatch: "object") -> "None":
        monkeypatch.setenv("USAGEWARDEN_PROFILES_PATH", "/from/env.json")
        assert parse_args([]).profiles_path == "/from/env.json"
        args = parse_args(["--profiles", "/from/flag.json"])
        assert args.profiles_path == "/from/flag.json"

    def test_env_auto_rotate_kept_without_flag(self, monkeypatch: "object") -> "None":
        monkeypatch.setenv("USAGEWARDEN_AUTO_ROTATE", "1")
        assert parse_args([]).auto_rotate is True


class TestParseListenAddress:
    def test_port_only(self) -> "None":
        assert _parse_listen_address(":9186") == ("0.0.0.0", 9186)

    def test_host_and_port(self) -> "None":
        assert _parse_listen_address("127.0.0.1:8080") == ("127.0.0.1", 8080)
