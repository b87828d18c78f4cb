"""
reset detection between two consecutive usage readings.

A window resets when its reset boundary moves forward. The event
carries the previous reading so the closing values of the window can
be recorded; the current reading already shows the new window.

If the upstream service rolled a window over before the prior state
was ever observed (the first reading already shows the new boundary),
nothing is emitted: the closing values are simply unknown.
"""

import structlog

from usagewarden.models import ResetEvent, UsageReading, WindowKind

logger = structlog.get_logger()


def detect(
    previous: "UsageReading | None",
    current: "UsageReading",
) -> "list[ResetEvent]":
    """
    returns one ResetEvent per window whose reset time moved forward,
    in WindowKind order. The first reading never produces events.
    """
    if previous is None:
        return []

    events: "list[ResetEvent]" = []
    for kind in WindowKind:
        prev_reset = previous.reset_at(kind)
        curr_reset = current.reset_at(kind)

        # a window nobody reported on either side cannot have reset
        if prev_reset is None or curr_reset is None:
            continue

        if curr_reset > prev_reset:
            logger.debug(
                "window_reset_detected",
                window=kind.value,
                previous_reset=prev_reset.isoformat(),
                current_reset=curr_reset.isoformat(),
            )
            events.append(
                ResetEvent(window_kind=kind, reset_at=prev_reset, previous=previous)
            )

    return events
