import structlog

from usagewarden.models import EventKind, NotificationEvent

logger = structlog.get_logger()


class LogNotificationSink:
    """
    writes every notification event to the structured log.
    """

    async def emit(self, event: "NotificationEvent") -> "None":
        if event.kind is EventKind.THRESHOLD:
            logger.warning(
                "usage_threshold_crossed",
                profile_id=event.profile_id,
                window=event.window_kind.value if event.window_kind else None,
                threshold=event.threshold,
                percentage=event.percentage,
            )
            return

        logger.info("profile_event", profile_id=event.profile_id, kind=event.kind.value)

    async def close(self) -> "None":
        pass
