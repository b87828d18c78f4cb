import asyncio
import signal

import structlog
from prometheus_client import start_http_server

from usagewarden.cli import parse_args
from usagewarden.coordinator import RefreshCoordinator
from usagewarden.fetcher.file import FileUsageFetcher
from usagewarden.history import HistorySnapshotStore
from usagewarden.logging import setup_logging
from usagewarden.metrics import MetricsUpdater
from usagewarden.profile_store import JsonProfileStore
from usagewarden.sink.base import NotificationSink
from usagewarden.sink.log import LogNotificationSink
from usagewarden.sink.webhook import WebhookNotificationSink

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level, json_output=config.log_format == "json")

    store = JsonProfileStore(config.profiles_path)
    if not store.snapshot():
        raise SystemExit(f"No profiles configured in {config.profiles_path}.")

    sink: "NotificationSink"
    if config.webhook_enabled:
        sink = WebhookNotificationSink(config.webhook_url)
        logger.info("webhook_sink_enabled", url=config.webhook_url)
    else:
        sink = LogNotificationSink()

    host, port = _parse_listen_address(config.listen_address)
    start_http_server(port, addr=host)
    logger.info("metrics_server_started", host=host, port=port)

    coordinator = RefreshCoordinator(
        store=store,
        fetcher=FileUsageFetcher(config.readings_dir),
        history=HistorySnapshotStore(config.history_dir),
        sink=sink,
        metrics=MetricsUpdater(),
        auto_rotate=config.auto_rotate,
        fetch_timeout=config.fetch_timeout,
    )

    async def _run() -> "None":
        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the coordinator
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, coordinator.stop)

        try:
            await coordinator.run()
        finally:
            logger.info("shutting_down")
            await coordinator.close()
            logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
