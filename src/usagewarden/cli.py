import argparse

from usagewarden.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="usagewarden",
        description="Multi-profile usage window tracker with reset history and alerts",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9186",
        help="Address to expose metrics on (default: :9186)",
    )
    parser.add_argument(
        "--fetch.timeout",
        dest="fetch_timeout",
        type=float,
        default=10.0,
        help="Per-source fetch timeout in seconds (default: 10)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default="console",
        choices=["console", "json"],
        help="Log output format (default: console)",
    )
    parser.add_argument(
        "--profiles",
        dest="profiles_path",
        default=None,
        help="Path of the profiles JSON document",
    )
    parser.add_argument(
        "--history.dir",
        dest="history_dir",
        default=None,
        help="Directory for per-profile reset history",
    )
    parser.add_argument(
        "--readings.dir",
        dest="readings_dir",
        default=None,
        help="Directory the usage readings are read from",
    )
    parser.add_argument(
        "--auto-rotate",
        dest="auto_rotate",
        action="store_true",
        default=None,
        help="Rotate the active profile when its session is exhausted",
    )

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.listen_address = args.listen_address
    config.fetch_timeout = args.fetch_timeout
    config.log_level = args.log_level
    config.log_format = args.log_format
    # flags override the environment only when given
    if args.profiles_path is not None:
        config.profiles_path = args.profiles_path
    if args.history_dir is not None:
        config.history_dir = args.history_dir
    if args.readings_dir is not None:
        config.readings_dir = args.readings_dir
    if args.auto_rotate is not None:
        config.auto_rotate = args.auto_rotate
    return config
