import threading
from collections.abc import Sequence

from usagewarden.models import (
    DEFAULT_USAGE_THRESHOLDS,
    ThresholdCrossing,
    UsageReading,
    WindowKind,
)


class ThresholdTracker:
    """
    ThresholdTracker: Is a thread-safe record of which alert
    thresholds already fired for a (profile, window) pair since that
    window last reset.

    Guarantees at most one crossing per threshold per window lifetime.
    A reading that jumps past several thresholds at once fires every
    one of them, in ascending order. State is in memory only and is
    cleared by reset() when the coordinator observes a window reset.
    """

    def __init__(self) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._fired: "dict[tuple[str, WindowKind], set[float]]" = {}

    def evaluate(
        self,
        profile_id: "str",
        window_kind: "WindowKind",
        reading: "UsageReading",
        thresholds: "Sequence[float]" = DEFAULT_USAGE_THRESHOLDS,
        monthly_budget: "float | None" = None,
    ) -> "list[ThresholdCrossing]":
        """
        marks and returns every threshold the reading meets or exceeds
        that has not fired yet. Billing cycle percentages are relative
        to monthly_budget; without a budget nothing fires for them.
        """
        percentage = reading.percentage(window_kind, monthly_budget)
        if percentage is None:
            return []

        crossed: "list[ThresholdCrossing]" = []
        with self._lock:
            fired = self._fired.setdefault((profile_id, window_kind), set())
            for threshold in sorted(thresholds):
                if threshold in fired or percentage < threshold:
                    continue
                fired.add(threshold)
                crossed.append(
                    ThresholdCrossing(
                        window_kind=window_kind,
                        threshold=threshold,
                        percentage=percentage,
                    )
                )
        return crossed

    def reset(self, profile_id: "str", window_kind: "WindowKind") -> "None":
        """
        forgets fired thresholds for one window of one profile.
        """
        with self._lock:
            self._fired.pop((profile_id, window_kind), None)

    def fired(self, profile_id: "str", window_kind: "WindowKind") -> "frozenset[float]":
        """
        returns a copy of the thresholds fired so far. Readers never
        see the live set.
        """
        with self._lock:
            return frozenset(self._fired.get((profile_id, window_kind), ()))
