import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

import structlog

from usagewarden.config import validate_profile
from usagewarden.errors import ConfigurationError, FetchError, StoreError
from usagewarden.fetcher.base import UsageFetcher
from usagewarden.history import HistorySnapshotStore
from usagewarden.metrics import MetricsUpdater
from usagewarden.models import (
    SOURCE_WINDOWS,
    CredentialSource,
    EventKind,
    NotificationEvent,
    Profile,
    ResetEvent,
    SourceKind,
    ThresholdCrossing,
    UsageReading,
    UsageSnapshot,
    WindowKind,
    utcnow,
)
from usagewarden.profile_store import CredentialProfileStore
from usagewarden.reset_detector import detect
from usagewarden.rotation import AutoRotationSelector
from usagewarden.sink.base import NotificationSink
from usagewarden.thresholds import ThresholdTracker
from usagewarden.tier import resolve

logger = structlog.get_logger()

# consecutive failures after which a source is reported as degraded
DEFAULT_DEGRADED_AFTER = 3
DEFAULT_FETCH_TIMEOUT = 10.0


class ProfileState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    MERGING = "merging"
    EVALUATING = "evaluating"
    PUBLISHING = "publishing"
    SUSPENDED = "suspended"


@dataclass(frozen=True, slots=True)
class RefreshUpdate:
    """
    RefreshUpdate is what observers receive after every tick of a
    profile. It is immutable: observers can keep it around safely.
    """

    profile_id: "str"
    reading: "UsageReading | None"
    resets: "tuple[ResetEvent, ...]" = ()
    crossings: "tuple[ThresholdCrossing, ...]" = ()
    degraded_sources: "frozenset[SourceKind]" = frozenset()
    # non-fatal problems, e.g. a snapshot that could not be persisted
    warnings: "tuple[str, ...]" = ()
    suspended: "bool" = False
    # auto rotation wanted to move away but nobody was eligible
    rotation_unavailable: "bool" = False
    activated_profile_id: "str | None" = None


Observer = Callable[["RefreshUpdate"], None]


def merge_readings(
    previous: "UsageReading | None",
    results: "Sequence[tuple[CredentialSource, UsageReading]]",
    fetched_at: "datetime",
) -> "UsageReading":
    """
    folds successful source results over the previous reading. Each
    source only contributes the windows it can report, the most
    recently fetched result wins, and windows of failed sources keep
    their last known values.
    """
    if previous is None:
        merged = UsageReading(fetched_at=fetched_at)
    else:
        merged = replace(previous, fetched_at=fetched_at)

    for source, reading in sorted(results, key=lambda r: r[1].fetched_at):
        for kind in SOURCE_WINDOWS[source.kind]:
            window = reading.window(kind)
            if window is not None:
                merged = merged.with_window(kind, window)
        if reading.capabilities is not None:
            merged = replace(merged, capabilities=reading.capabilities)

    return merged


@dataclass
class _ProfileRuntime:
    """
    mutable per-profile state, only ever touched from the event loop.
    """

    interval: "float"
    reading: "UsageReading | None" = None
    state: "ProfileState" = ProfileState.IDLE
    failures: "dict[SourceKind, int]" = field(default_factory=dict)
    inflight: "asyncio.Task | None" = None
    timer: "asyncio.Task | None" = None
    # bumped on disable so in-flight results can be recognized as stale
    generation: "int" = 0
    last_update: "RefreshUpdate | None" = None


class RefreshCoordinator:
    """
    RefreshCoordinator owns one polling task per profile. Each tick
    fetches every usable credential source concurrently, merges the
    results, records window resets, evaluates alert thresholds,
    optionally rotates the active profile, and publishes the outcome
    to observers.

    Ticks of one profile never overlap: a refresh requested while a
    fetch is in flight joins that fetch instead of starting another.
    """

    def __init__(
        self,
        store: "CredentialProfileStore",
        fetcher: "UsageFetcher",
        history: "HistorySnapshotStore",
        sink: "NotificationSink",
        metrics: "MetricsUpdater | None" = None,
        thresholds: "ThresholdTracker | None" = None,
        rotation: "AutoRotationSelector | None" = None,
        auto_rotate: "bool" = False,
        fetch_timeout: "float" = DEFAULT_FETCH_TIMEOUT,
        degraded_after: "int" = DEFAULT_DEGRADED_AFTER,
        clock: "Callable[[], datetime]" = utcnow,
    ) -> "None":
        self._store = store
        self._fetcher = fetcher
        self._history = history
        self._sink = sink
        self._metrics = metrics
        self._thresholds = thresholds or ThresholdTracker()
        self._rotation = rotation or AutoRotationSelector()
        self._auto_rotate = auto_rotate
        self._fetch_timeout = fetch_timeout
        self._degraded_after = degraded_after
        self._clock = clock
        self._observers: "list[Observer]" = []
        self._runtimes: "dict[str, _ProfileRuntime]" = {}
        self._active_profile_id: "str | None" = None
        self._running = False
        self._stop_event: "asyncio.Event" = asyncio.Event()

    # observers

    def subscribe(self, observer: "Observer") -> "Callable[[], None]":
        """
        registers a callback for every published update. Returns a
        function that unregisters it.
        """
        self._observers.append(observer)

        def _unsubscribe() -> "None":
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def state(self, profile_id: "str") -> "ProfileState":
        rt = self._runtimes.get(profile_id)
        return ProfileState.IDLE if rt is None else rt.state

    def last_reading(self, profile_id: "str") -> "UsageReading | None":
        rt = self._runtimes.get(profile_id)
        return None if rt is None else rt.reading

    def last_update(self, profile_id: "str") -> "RefreshUpdate | None":
        rt = self._runtimes.get(profile_id)
        return None if rt is None else rt.last_update

    def degraded_sources(self, profile_id: "str") -> "frozenset[SourceKind]":
        rt = self._runtimes.get(profile_id)
        if rt is None:
            return frozenset()
        return frozenset(k for k, n in rt.failures.items() if n >= self._degraded_after)

    @property
    def thresholds(self) -> "ThresholdTracker":
        return self._thresholds

    @property
    def active_profile_id(self) -> "str | None":
        if self._active_profile_id is None:
            self._active_profile_id = self._initial_active(self._store.snapshot())
        return self._active_profile_id

    def set_active_profile(self, profile_id: "str") -> "None":
        self._active_profile_id = profile_id

    @property
    def auto_rotate(self) -> "bool":
        return self._auto_rotate

    @auto_rotate.setter
    def auto_rotate(self, enabled: "bool") -> "None":
        self._auto_rotate = enabled

    # lifecycle

    def stop(self) -> "None":
        """
        signals run() to cancel all timers and return.
        """
        self._stop_event.set()

    async def close(self) -> "None":
        await self._sink.close()

    async def run(self) -> "None":
        """
        starts a timer task for every enabled profile and runs until
        stop() is called.
        """
        self._running = True
        profiles = self._store.snapshot()
        if self._active_profile_id is None:
            self._active_profile_id = self._initial_active(profiles)

        for profile in profiles:
            if profile.enabled:
                self._start_timer(profile)

        logger.info(
            "coordinator_started",
            profiles=len(profiles),
            active_profile_id=self._active_profile_id,
        )

        try:
            await self._stop_event.wait()
        finally:
            self._running = False
            timers = [
                rt.timer for rt in self._runtimes.values() if rt.timer is not None
            ]
            for task in timers:
                task.cancel()
            await asyncio.gather(*timers, return_exceptions=True)
            for rt in self._runtimes.values():
                rt.timer = None
            logger.info("coordinator_stopped")

    def update_profile(self, profile: "Profile") -> "None":
        """
        applies a settings change. Malformed settings raise
        ConfigurationError before anything is stored. A changed
        interval restarts the profile's timer, disabling cancels it.
        """
        validate_profile(profile)
        self._store.save(profile)

        if not profile.enabled:
            self.disable_profile(profile.id)
            return

        rt = self._runtime(profile)
        interval_changed = rt.interval != profile.behavior.refresh_interval
        rt.interval = profile.behavior.refresh_interval

        if self._running and (rt.timer is None or interval_changed):
            self._cancel_timer(rt)
            self._start_timer(profile)
            logger.info(
                "refresh_interval_applied",
                profile_id=profile.id,
                interval=rt.interval,
            )

    def disable_profile(self, profile_id: "str") -> "None":
        """
        cancels the profile's timer. A fetch already in flight may
        finish, but its result is discarded.
        """
        rt = self._runtimes.get(profile_id)
        if rt is None:
            return
        rt.generation += 1
        self._cancel_timer(rt)
        rt.state = ProfileState.IDLE
        logger.info("profile_disabled", profile_id=profile_id)

    # refresh

    async def refresh(self, profile_id: "str") -> "RefreshUpdate | None":
        """
        runs one tick for the profile, or joins the tick already in
        flight. Returns the published update, None if the profile is
        unknown, disabled or its result was discarded.
        """
        profile = self._find(self._store.snapshot(), profile_id)
        if profile is None:
            logger.warning("refresh_unknown_profile", profile_id=profile_id)
            return None

        rt = self._runtime(profile)
        if rt.inflight is None or rt.inflight.done():
            rt.inflight = asyncio.ensure_future(self._tick(profile_id, rt.generation))
        else:
            logger.debug("refresh_coalesced", profile_id=profile_id)

        # shielded so a cancelled caller does not cancel the shared tick
        return await asyncio.shield(rt.inflight)

    async def _timer_loop(self, profile_id: "str") -> "None":
        rt = self._runtimes[profile_id]
        while not self._stop_event.is_set():
            await self.refresh(profile_id)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=rt.interval)
            except TimeoutError:
                pass

    async def _tick(
        self, profile_id: "str", generation: "int"
    ) -> "RefreshUpdate | None":
        rt = self._runtimes[profile_id]
        try:
            return await self._run_tick(profile_id, rt, generation)
        except Exception:
            logger.exception("refresh_tick_failed", profile_id=profile_id)
            return None
        finally:
            if rt.state is not ProfileState.SUSPENDED:
                rt.state = ProfileState.IDLE

    async def _run_tick(
        self,
        profile_id: "str",
        rt: "_ProfileRuntime",
        generation: "int",
    ) -> "RefreshUpdate | None":
        # one immutable view of all profiles for the whole tick
        profiles = self._store.snapshot()
        profile = self._find(profiles, profile_id)
        if profile is None or not profile.enabled:
            return None

        now = self._clock()
        self._prune_failures(profile, rt)

        if not profile.has_usable_credentials:
            if rt.state is not ProfileState.SUSPENDED:
                logger.info("profile_suspended", profile_id=profile_id)
            rt.state = ProfileState.SUSPENDED
            activated, unavailable = await self._maybe_rotate(
                profile, rt.reading, profiles, now
            )
            update = RefreshUpdate(
                profile_id=profile_id,
                reading=rt.reading,
                degraded_sources=self.degraded_sources(profile_id),
                suspended=True,
                rotation_unavailable=unavailable,
                activated_profile_id=activated,
            )
            self._publish(rt, update)
            return update

        if rt.state is ProfileState.SUSPENDED:
            logger.info("profile_resumed", profile_id=profile_id)

        rt.state = ProfileState.FETCHING
        results = await self._fetch_all(profile, rt)

        if generation != rt.generation:
            logger.info("refresh_result_discarded", profile_id=profile_id)
            return None

        previous = rt.reading
        if not results:
            # every source failed: keep the cached reading untouched
            update = RefreshUpdate(
                profile_id=profile_id,
                reading=previous,
                degraded_sources=self.degraded_sources(profile_id),
            )
            self._publish(rt, update)
            return update

        rt.state = ProfileState.MERGING
        current = merge_readings(previous, results, now)

        rt.state = ProfileState.EVALUATING
        warnings: "list[str]" = []
        resets = detect(previous, current)
        self._record_resets(profile_id, resets, now, warnings)
        crossings = self._evaluate_thresholds(
            profile, current, {e.window_kind for e in resets}
        )

        rt.reading = current
        self._persist_profile(profile_id, current, warnings)
        self._observe_usage(profile_id, current)

        rt.state = ProfileState.PUBLISHING
        for crossing in crossings:
            if self._metrics is not None:
                self._metrics.inc_threshold_alert(profile_id, crossing.window_kind)
            await self._emit(
                NotificationEvent(
                    profile_id=profile_id,
                    kind=EventKind.THRESHOLD,
                    window_kind=crossing.window_kind,
                    threshold=crossing.threshold,
                    percentage=crossing.percentage,
                )
            )

        session_reset = any(e.window_kind is WindowKind.SESSION for e in resets)
        if session_reset and profile.behavior.auto_start_session_enabled:
            logger.info("auto_start_requested", profile_id=profile_id)
            await self._emit(
                NotificationEvent(
                    profile_id=profile_id, kind=EventKind.AUTO_START_REQUESTED
                )
            )

        activated, unavailable = await self._maybe_rotate(
            profile, current, profiles, now
        )

        update = RefreshUpdate(
            profile_id=profile_id,
            reading=current,
            resets=tuple(resets),
            crossings=tuple(crossings),
            degraded_sources=self.degraded_sources(profile_id),
            warnings=tuple(warnings),
            rotation_unavailable=unavailable,
            activated_profile_id=activated,
        )
        self._publish(rt, update)
        return update

    # fetching

    async def _fetch_all(
        self,
        profile: "Profile",
        rt: "_ProfileRuntime",
    ) -> "list[tuple[CredentialSource, UsageReading]]":
        sources = profile.usable_sources
        readings = await asyncio.gather(
            *(self._fetch_source(profile.id, source, rt) for source in sources)
        )
        return [(s, r) for s, r in zip(sources, readings) if r is not None]

    async def _fetch_source(
        self,
        profile_id: "str",
        source: "CredentialSource",
        rt: "_ProfileRuntime",
    ) -> "UsageReading | None":
        start = time.monotonic()
        try:
            reading = await asyncio.wait_for(
                self._fetcher.fetch(source.handle, source.kind),
                timeout=self._fetch_timeout,
            )
        except TimeoutError:
            logger.warning(
                "fetch_timeout",
                profile_id=profile_id,
                source=source.kind.value,
                timeout=self._fetch_timeout,
            )
            self._record_failure(profile_id, source.kind, rt)
            return None
        except FetchError as exc:
            logger.warning(
                "fetch_failed",
                profile_id=profile_id,
                source=source.kind.value,
                reason=exc.reason,
            )
            self._record_failure(profile_id, source.kind, rt)
            return None
        except Exception:
            logger.exception(
                "fetch_error", profile_id=profile_id, source=source.kind.value
            )
            self._record_failure(profile_id, source.kind, rt)
            return None
        finally:
            if self._metrics is not None:
                self._metrics.observe_fetch_duration(
                    profile_id, source.kind, time.monotonic() - start
                )

        if rt.failures.get(source.kind, 0) >= self._degraded_after:
            logger.info(
                "source_recovered", profile_id=profile_id, source=source.kind.value
            )
        rt.failures[source.kind] = 0
        if self._metrics is not None:
            self._metrics.set_last_fetch_success(profile_id, source.kind, time.time())
            self._metrics.set_source_degraded(profile_id, source.kind, False)
        return reading

    def _record_failure(
        self,
        profile_id: "str",
        source: "SourceKind",
        rt: "_ProfileRuntime",
    ) -> "None":
        count = rt.failures.get(source, 0) + 1
        rt.failures[source] = count

        if self._metrics is not None:
            self._metrics.inc_fetch_error(profile_id, source)

        if count == self._degraded_after:
            logger.warning(
                "source_degraded",
                profile_id=profile_id,
                source=source.value,
                consecutive_failures=count,
            )
            if self._metrics is not None:
                self._metrics.set_source_degraded(profile_id, source, True)

    def _prune_failures(self, profile: "Profile", rt: "_ProfileRuntime") -> "None":
        """
        drops failure counts of sources the profile no longer uses, so a
        removed or revoked credential does not stay degraded.
        """
        usable = {s.kind for s in profile.usable_sources}
        for kind in [k for k in rt.failures if k not in usable]:
            del rt.failures[kind]
            if self._metrics is not None:
                self._metrics.set_source_degraded(profile.id, kind, False)

    # evaluation

    def _record_resets(
        self,
        profile_id: "str",
        resets: "list[ResetEvent]",
        now: "datetime",
        warnings: "list[str]",
    ) -> "None":
        for event in resets:
            kind = event.window_kind
            self._thresholds.reset(profile_id, kind)
            if self._metrics is not None:
                self._metrics.inc_reset(profile_id, kind)
            logger.info(
                "window_reset",
                profile_id=profile_id,
                window=kind.value,
                reset_at=event.reset_at.isoformat(),
            )

            snapshot = UsageSnapshot.from_reset(event, now)
            if not snapshot.has_usage:
                logger.debug(
                    "snapshot_skipped_no_usage",
                    profile_id=profile_id,
                    window=kind.value,
                )
                continue

            try:
                self._history.append(profile_id, snapshot)
            except StoreError as exc:
                # the event is gone after this tick, so the snapshot is lost
                logger.error(
                    "snapshot_store_failed",
                    profile_id=profile_id,
                    window=kind.value,
                    error=str(exc),
                )
                if self._metrics is not None:
                    self._metrics.inc_store_error(profile_id)
                warnings.append(f"failed to record {kind.value} snapshot: {exc}")

    def _evaluate_thresholds(
        self,
        profile: "Profile",
        reading: "UsageReading",
        just_reset: "set[WindowKind]",
    ) -> "list[ThresholdCrossing]":
        if not profile.notifications.enabled:
            return []

        crossings: "list[ThresholdCrossing]" = []
        for kind in (WindowKind.SESSION, WindowKind.WEEKLY):
            # a window that just reset starts over at zero this tick
            if kind in just_reset:
                continue
            crossings.extend(
                self._thresholds.evaluate(
                    profile.id, kind, reading, profile.notifications.thresholds
                )
            )

        if profile.budget.monthly_budget and WindowKind.BILLING_CYCLE not in just_reset:
            crossings.extend(
                self._thresholds.evaluate(
                    profile.id,
                    WindowKind.BILLING_CYCLE,
                    reading,
                    profile.budget.thresholds,
                    monthly_budget=profile.budget.monthly_budget,
                )
            )

        for crossing in crossings:
            logger.info(
                "threshold_crossed",
                profile_id=profile.id,
                window=crossing.window_kind.value,
                threshold=crossing.threshold,
                percentage=crossing.percentage,
            )
        return crossings

    def _persist_profile(
        self,
        profile_id: "str",
        reading: "UsageReading",
        warnings: "list[str]",
    ) -> "None":
        # re-read so a settings edit made during the fetch is not overwritten
        latest = self._find(self._store.snapshot(), profile_id)
        if latest is None:
            return

        tier = latest.account_tier
        if reading.capabilities is not None:
            tier = resolve(reading.capabilities)
            if tier is not latest.account_tier:
                logger.info(
                    "account_tier_resolved", profile_id=profile_id, tier=tier.value
                )

        try:
            self._store.save(replace(latest, cached_reading=reading, account_tier=tier))
        except (StoreError, ConfigurationError) as exc:
            logger.error("profile_save_failed", profile_id=profile_id, error=str(exc))
            warnings.append(f"failed to save profile: {exc}")

    def _observe_usage(self, profile_id: "str", reading: "UsageReading") -> "None":
        if self._metrics is None:
            return
        for kind in (WindowKind.SESSION, WindowKind.WEEKLY):
            percentage = reading.percentage(kind)
            if percentage is not None:
                self._metrics.set_usage_percentage(profile_id, kind, percentage)

    # rotation

    async def _maybe_rotate(
        self,
        profile: "Profile",
        reading: "UsageReading | None",
        profiles: "Sequence[Profile]",
        now: "datetime",
    ) -> "tuple[str | None, bool]":
        """
        returns (activated profile id, rotation unavailable).
        """
        if not self._auto_rotate or profile.id != self.active_profile_id:
            return None, False
        if not self._rotation.needs_rotation(profile, reading):
            return None, False
        if self._rotation.cooldown_active(now):
            return None, False

        target = self._rotation.select_next(profiles, profile, now)
        if target is None:
            return None, True

        # save on top of the latest stored versions, not the tick snapshot
        latest = self._store.snapshot()
        outgoing = self._find(latest, profile.id) or profile
        incoming = self._find(latest, target.id) or target
        try:
            self._store.save(replace(outgoing, is_active_for_display=False))
            self._store.save(
                replace(incoming, is_active_for_display=True, last_used_at=now)
            )
        except (StoreError, ConfigurationError) as exc:
            logger.error("rotation_save_failed", profile_id=target.id, error=str(exc))
            return None, False

        self._rotation.record_rotation(now)
        self._active_profile_id = target.id
        if self._metrics is not None:
            self._metrics.inc_rotation()
        logger.info(
            "profile_rotated", from_profile_id=profile.id, to_profile_id=target.id
        )

        await self._emit(
            NotificationEvent(profile_id=target.id, kind=EventKind.ACTIVATED)
        )
        return target.id, False

    # helpers

    async def _emit(self, event: "NotificationEvent") -> "None":
        try:
            await self._sink.emit(event)
        except Exception:
            logger.exception("notification_emit_failed", profile_id=event.profile_id)

    def _publish(self, rt: "_ProfileRuntime", update: "RefreshUpdate") -> "None":
        rt.last_update = update
        for observer in list(self._observers):
            try:
                observer(update)
            except Exception:
                logger.exception("observer_failed", profile_id=update.profile_id)

    def _runtime(self, profile: "Profile") -> "_ProfileRuntime":
        rt = self._runtimes.get(profile.id)
        if rt is None:
            # seed with the persisted reading so resets across restarts are seen
            rt = _ProfileRuntime(
                interval=profile.behavior.refresh_interval,
                reading=profile.cached_reading,
            )
            self._runtimes[profile.id] = rt
        return rt

    def _start_timer(self, profile: "Profile") -> "None":
        rt = self._runtime(profile)
        rt.interval = profile.behavior.refresh_interval
        rt.timer = asyncio.create_task(self._timer_loop(profile.id))

    @staticmethod
    def _cancel_timer(rt: "_ProfileRuntime") -> "None":
        if rt.timer is not None:
            rt.timer.cancel()
            rt.timer = None

    @staticmethod
    def _find(profiles: "Sequence[Profile]", profile_id: "str") -> "Profile | None":
        for profile in profiles:
            if profile.id == profile_id:
                return profile
        return None

    @staticmethod
    def _initial_active(profiles: "Sequence[Profile]") -> "str | None":
        for profile in profiles:
            if profile.is_active_for_display:
                return profile.id
        return profiles[0].id if profiles else None
