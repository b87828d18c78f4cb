import json

import httpx
import pytest
import respx

from usagewarden.models import EventKind, NotificationEvent, WindowKind
from usagewarden.sink.log import LogNotificationSink
from usagewarden.sink.webhook import WebhookNotificationSink

WEBHOOK_URL = "https://hooks.example.com/usage"


def _threshold_event() -> "NotificationEvent":
    return NotificationEvent(
        profile_id="p1",
        kind=EventKind.THRESHOLD,
        window_kind=WindowKind.SESSION,
        threshold=90.0,
        percentage=92.5,
    )


class TestWebhookNotificationSink:
    @pytest.mark.asyncio
    @respx.mock
    async def test_posts_event_as_json(self) -> "None":
        route = respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(204))
        sink = WebhookNotificationSink(WEBHOOK_URL, headers={"X-Token": "secret"})

        delivered = await sink.emit(_threshold_event())
        await sink.close()

        assert delivered is True
        assert route.called
        request = route.calls.last.request
        assert request.headers["X-Token"] == "secret"
        assert json.loads(request.content) == {
            "profile_id": "p1",
            "kind": "threshold",
            "window_kind": "session",
            "threshold": 90.0,
            "percentage": 92.5,
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejected_by_endpoint(self) -> "None":
        respx.post(WEBHOOK_URL).mock(return_value=httpx.Response(500))
        sink = WebhookNotificationSink(WEBHOOK_URL)

        delivered = await sink.emit(
            NotificationEvent(profile_id="p1", kind=EventKind.ACTIVATED)
        )
        await sink.close()

        assert delivered is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error_is_swallowed(self) -> "None":
        respx.post(WEBHOOK_URL).mock(side_effect=httpx.ConnectError)
        sink = WebhookNotificationSink(WEBHOOK_URL)

        delivered = await sink.emit(_threshold_event())
        await sink.close()

        assert delivered is False


class TestLogNotificationSink:
    @pytest.mark.asyncio
    async def test_emit_does_not_raise(self) -> "None":
        sink = LogNotificationSink()
        assert await sink.emit(_threshold_event()) is None
        assert (
            await sink.emit(
                NotificationEvent(profile_id="p1", kind=EventKind.AUTO_START_REQUESTED)
            )
            is None
        )
        await sink.close()
