from typing import Protocol

from usagewarden.models import NotificationEvent


class NotificationSink(Protocol):
    """
    NotificationSink receives threshold, auto-start and activation
    events. Delivery is the sink's concern: the coordinator logs and
    ignores any error a sink raises.
    """

    async def emit(self, event: "NotificationEvent") -> "bool | None": ...

    async def close(self) -> "None": ...
