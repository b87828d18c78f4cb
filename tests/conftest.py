from datetime import datetime, timezone

import pytest
from prometheus_client import CollectorRegistry


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def t0() -> "datetime":
    """
    fixed reference instant so tests never depend on the wall clock.
    """
    return datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
