from datetime import datetime, timedelta

from usagewarden.models import (
    BillingWindow,
    SessionWindow,
    UsageReading,
    WeeklyWindow,
    WindowKind,
)
from usagewarden.reset_detector import detect


def _reading(
    at: "datetime",
    session: "tuple[float, datetime] | None" = None,
    weekly: "tuple[float, datetime] | None" = None,
    billing: "tuple[int, datetime] | None" = None,
) -> "UsageReading":
    return UsageReading(
        fetched_at=at,
        session=None
        if session is None
        else SessionWindow(
            tokens_used=int(session[0] * 100),
            limit=10_000,
            percentage=session[0],
            reset_at=session[1],
        ),
        weekly=None
        if weekly is None
        else WeeklyWindow(
            tokens_used=int(weekly[0] * 1000),
            limit=100_000,
            percentage=weekly[0],
            reset_at=weekly[1],
        ),
        billing=None
        if billing is None
        else BillingWindow(
            spend_cents=billing[0],
            prepaid_credits_cents=5000,
            currency="USD",
            reset_at=billing[1],
        ),
    )


class TestDetect:
    def test_first_reading_never_resets(self, t0: "datetime") -> "None":
        current = _reading(t0, session=(3.0, t0 + timedelta(hours=5)))
        assert detect(None, current) == []

    def test_same_reset_time_is_idempotent(self, t0: "datetime") -> "None":
        reset = t0 + timedelta(hours=2)
        previous = _reading(t0, session=(40.0, reset))
        current = _reading(t0 + timedelta(seconds=30), session=(45.0, reset))
        assert detect(previous, current) == []

    def test_session_reset_carries_previous_values(self, t0: "datetime") -> "None":
        previous = _reading(t0, session=(97.0, t0))
        current = _reading(
            t0 + timedelta(seconds=30), session=(3.0, t0 + timedelta(hours=5))
        )

        events = detect(previous, current)

        assert len(events) == 1
        event = events[0]
        assert event.window_kind is WindowKind.SESSION
        assert event.reset_at == t0
        assert event.previous.session is not None
        assert event.previous.session.percentage == 97.0

    def test_multiple_windows_reset_independently(self, t0: "datetime") -> "None":
        previous = _reading(t0, session=(80.0, t0), weekly=(60.0, t0))
        current = _reading(
            t0 + timedelta(seconds=30),
            session=(0.0, t0 + timedelta(hours=5)),
            weekly=(0.0, t0 + timedelta(days=7)),
        )

        kinds = [e.window_kind for e in detect(previous, current)]

        assert kinds == [WindowKind.SESSION, WindowKind.WEEKLY]

    def test_billing_cycle_reset(self, t0: "datetime") -> "None":
        previous = _reading(t0, billing=(4200, t0))
        current = _reading(
            t0 + timedelta(minutes=1), billing=(0, t0 + timedelta(days=30))
        )

        events = detect(previous, current)

        assert [e.window_kind for e in events] == [WindowKind.BILLING_CYCLE]
        assert events[0].previous.billing is not None
        assert events[0].previous.billing.spend_cents == 4200

    def test_backwards_reset_time_is_ignored(self, t0: "datetime") -> "None":
        previous = _reading(t0, session=(50.0, t0 + timedelta(hours=5)))
        current = _reading(
            t0 + timedelta(seconds=30), session=(50.0, t0 + timedelta(hours=4))
        )
        assert detect(previous, current) == []

    def test_window_missing_on_one_side(self, t0: "datetime") -> "None":
        previous = _reading(t0, session=(50.0, t0))
        current = _reading(
            t0 + timedelta(seconds=30), weekly=(10.0, t0 + timedelta(days=7))
        )
        assert detect(previous, current) == []

    def test_already_rolled_over_before_observation(self, t0: "datetime") -> "None":
        # the server reset before the prior state was seen: both readings
        # already show the new window, so there is nothing to close out
        reset = t0 + timedelta(hours=5)
        previous = _reading(t0, session=(0.0, reset))
        current = _reading(t0 + timedelta(seconds=30), session=(0.0, reset))
        assert detect(previous, current) == []
