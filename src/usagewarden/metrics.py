from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from usagewarden.models import SourceKind, WindowKind


class MetricsUpdater:
    """
    exposes coordinator activity as Prometheus metrics: fetch health
    per profile and source, current utilization per window, and counts
    of resets, alerts, rotations and lost snapshots.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._fetch_duration: "Histogram" = Histogram(
            "usagewarden_fetch_duration_seconds",
            "Duration of usage fetches per source",
            ["profile", "source"],
            registry=registry,
        )
        self._fetch_errors: "Counter" = Counter(
            "usagewarden_fetch_errors_total",
            "Total number of failed usage fetches by profile and source",
            ["profile", "source"],
            registry=registry,
        )
        self._last_fetch_success: "Gauge" = Gauge(
            "usagewarden_last_fetch_success_timestamp_seconds",
            "Unix timestamp of last successful fetch per profile and source",
            ["profile", "source"],
            registry=registry,
        )
        self._source_degraded: "Gauge" = Gauge(
            "usagewarden_source_degraded",
            "1 when a source has failed repeatedly and needs attention",
            ["profile", "source"],
            registry=registry,
        )
        self._usage_percentage: "Gauge" = Gauge(
            "usagewarden_usage_percentage",
            "Current utilization of a usage window",
            ["profile", "window"],
            registry=registry,
        )
        self._resets: "Counter" = Counter(
            "usagewarden_resets_total",
            "Total number of detected window resets",
            ["profile", "window"],
            registry=registry,
        )
        self._threshold_alerts: "Counter" = Counter(
            "usagewarden_threshold_alerts_total",
            "Total number of threshold crossings notified",
            ["profile", "window"],
            registry=registry,
        )
        self._store_errors: "Counter" = Counter(
            "usagewarden_snapshot_store_errors_total",
            "Total number of snapshots that could not be persisted",
            ["profile"],
            registry=registry,
        )
        self._rotations: "Counter" = Counter(
            "usagewarden_rotations_total",
            "Total number of automatic profile rotations",
            registry=registry,
        )

    def observe_fetch_duration(
        self, profile: "str", source: "SourceKind", duration_seconds: "float"
    ) -> "None":
        self._fetch_duration.labels(profile=profile, source=source.value).observe(
            duration_seconds
        )

    def inc_fetch_error(self, profile: "str", source: "SourceKind") -> "None":
        self._fetch_errors.labels(profile=profile, source=source.value).inc()

    def set_last_fetch_success(
        self, profile: "str", source: "SourceKind", timestamp: "float"
    ) -> "None":
        self._last_fetch_success.labels(profile=profile, source=source.value).set(
            timestamp
        )

    def set_source_degraded(
        self, profile: "str", source: "SourceKind", degraded: "bool"
    ) -> "None":
        self._source_degraded.labels(profile=profile, source=source.value).set(
            1 if degraded else 0
        )

    def set_usage_percentage(
        self, profile: "str", window: "WindowKind", percentage: "float"
    ) -> "None":
        self._usage_percentage.labels(profile=profile, window=window.value).set(
            percentage
        )

    def inc_reset(self, profile: "str", window: "WindowKind") -> "None":
        self._resets.labels(profile=profile, window=window.value).inc()

    def inc_threshold_alert(self, profile: "str", window: "WindowKind") -> "None":
        self._threshold_alerts.labels(profile=profile, window=window.value).inc()

    def inc_store_error(self, profile: "str") -> "None":
        self._store_errors.labels(profile=profile).inc()

    def inc_rotation(self) -> "None":
        self._rotations.inc()
