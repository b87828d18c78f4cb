import httpx
import structlog

from usagewarden.models import NotificationEvent

logger = structlog.get_logger()


class WebhookNotificationSink:
    """
    WebhookNotificationSink POSTs each notification event as JSON to a
    configured URL. Failures are logged and dropped: a missed alert
    must never stall a refresh cycle.
    """

    def __init__(
        self,
        url: "str",
        headers: "dict[str, str] | None" = None,
        timeout: "float" = 10.0,
    ) -> "None":
        self._url = url
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(
            timeout=timeout,
            headers=headers or {},
        )

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    async def emit(self, event: "NotificationEvent") -> "bool":
        """
        delivers one event. Returns True when the endpoint accepted it.
        """
        payload = event.to_dict()
        try:
            resp = await self._client.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning(
                "webhook_delivery_failed",
                profile_id=event.profile_id,
                kind=event.kind.value,
                error=str(exc),
            )
            return False

        if resp.is_error:
            logger.warning(
                "webhook_rejected",
                profile_id=event.profile_id,
                kind=event.kind.value,
                status=resp.status_code,
            )
            return False

        logger.debug(
            "webhook_delivered", profile_id=event.profile_id, kind=event.kind.value
        )
        return True
