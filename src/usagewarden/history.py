import csv
import io
import json
import os
import tempfile
import threading
from datetime import datetime, timedelta
from pathlib import Path

import structlog

from usagewarden.errors import StoreError
from usagewarden.models import UsageSnapshot, WindowKind, to_iso

logger = structlog.get_logger()

# a snapshot whose triggering reset lies further than this in the
# future of its own timestamp was recorded against a stale boundary
RESET_TIME_TOLERANCE = timedelta(seconds=60)

# maximum snapshots kept per window, None keeps everything
DEFAULT_RETENTION: "dict[WindowKind, int | None]" = {
    WindowKind.SESSION: 1000,
    WindowKind.WEEKLY: 500,
    WindowKind.BILLING_CYCLE: None,
}

CSV_COLUMNS: "list[str]" = [
    "timestamp",
    "window_kind",
    "triggering_reset_time",
    "session_tokens_used",
    "session_percentage",
    "weekly_tokens_used",
    "weekly_percentage",
    "model_breakdown",
    "api_spend_cents",
    "api_prepaid_credits_cents",
    "api_currency",
    "id",
]


class HistorySnapshotStore:
    """
    HistorySnapshotStore keeps the append-only reset history of every
    profile. Without a directory it lives purely in memory; with one,
    each profile's history is a JSON document rewritten atomically
    after every mutation. Deletion only happens per (profile, window)
    through clear().
    """

    def __init__(
        self,
        directory: "str | Path | None" = None,
        retention: "dict[WindowKind, int | None] | None" = None,
    ) -> "None":
        self._directory = Path(directory) if directory is not None else None
        self._retention = dict(DEFAULT_RETENTION if retention is None else retention)
        self._lock: "threading.Lock" = threading.Lock()
        # profile_id -> snapshots in insertion order
        self._histories: "dict[str, list[UsageSnapshot]]" = {}

    def append(self, profile_id: "str", snapshot: "UsageSnapshot") -> "None":
        """
        appends a snapshot and prunes the oldest ones of its window if
        the retention cap is exceeded. Raises StoreError if the history
        could not be persisted, in which case nothing is kept.
        """
        with self._lock:
            history = self._load(profile_id)
            updated = self._prune([*history, snapshot], snapshot.window_kind)
            self._commit(profile_id, updated)

        logger.info(
            "snapshot_recorded",
            profile_id=profile_id,
            window=snapshot.window_kind.value,
            triggering_reset_time=to_iso(snapshot.triggering_reset_time),
        )

    def query(
        self,
        profile_id: "str",
        window_kind: "WindowKind",
        start: "datetime | None" = None,
        end: "datetime | None" = None,
    ) -> "list[UsageSnapshot]":
        """
        returns the snapshots of one window, newest first, optionally
        limited to timestamps within [start, end]. Snapshots whose
        triggering reset time is inconsistent with their timestamp
        are left out. Equal timestamps keep their insertion order.
        """
        with self._lock:
            history = list(self._load(profile_id))

        selected = [
            s
            for s in history
            if s.window_kind is window_kind
            and s.triggering_reset_time <= s.timestamp + RESET_TIME_TOLERANCE
            and (start is None or s.timestamp >= start)
            and (end is None or s.timestamp <= end)
        ]
        # sorted() is stable with reverse=True as well
        return sorted(selected, key=lambda s: s.timestamp, reverse=True)

    def clear(self, profile_id: "str", window_kind: "WindowKind") -> "int":
        """
        removes the snapshots of one window of one profile. Returns
        the number of removed snapshots.
        """
        with self._lock:
            history = self._load(profile_id)
            kept = [s for s in history if s.window_kind is not window_kind]
            removed = len(history) - len(kept)
            if removed:
                self._commit(profile_id, kept)

        logger.info(
            "history_cleared",
            profile_id=profile_id,
            window=window_kind.value,
            removed=removed,
        )
        return removed

    def export_json(
        self,
        profile_id: "str",
        window_kind: "WindowKind | None" = None,
    ) -> "str":
        """
        serializes the history, oldest first, as pretty-printed JSON
        with sorted keys so exports diff cleanly.
        """
        records = [s.to_dict() for s in self._export_selection(profile_id, window_kind)]
        return json.dumps(records, indent=2, sort_keys=True, ensure_ascii=False)

    def export_csv(
        self,
        profile_id: "str",
        window_kind: "WindowKind | None" = None,
    ) -> "str":
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, lineterminator="\n")
        writer.writeheader()

        for snapshot in self._export_selection(profile_id, window_kind):
            row = snapshot.to_dict()
            if row["model_breakdown"] is not None:
                row["model_breakdown"] = json.dumps(
                    row["model_breakdown"], sort_keys=True, separators=(",", ":")
                )
            writer.writerow(
                {col: "" if row[col] is None else row[col] for col in CSV_COLUMNS}
            )

        return buffer.getvalue()

    def _export_selection(
        self,
        profile_id: "str",
        window_kind: "WindowKind | None",
    ) -> "list[UsageSnapshot]":
        with self._lock:
            history = list(self._load(profile_id))
        if window_kind is not None:
            history = [s for s in history if s.window_kind is window_kind]
        return sorted(history, key=lambda s: s.timestamp)

    def _prune(
        self,
        history: "list[UsageSnapshot]",
        window_kind: "WindowKind",
    ) -> "list[UsageSnapshot]":
        cap = self._retention.get(window_kind)
        if cap is None:
            return history

        of_kind = [s for s in history if s.window_kind is window_kind]
        excess = len(of_kind) - cap
        if excess <= 0:
            return history

        oldest = sorted(of_kind, key=lambda s: s.timestamp)[:excess]
        drop = {s.id for s in oldest}
        logger.debug("snapshots_pruned", window=window_kind.value, count=excess)
        return [s for s in history if s.id not in drop]

    @staticmethod
    def _path(directory: "Path", profile_id: "str") -> "Path":
        if not profile_id or os.sep in profile_id or profile_id.startswith("."):
            raise StoreError(
                f"invalid profile id for history storage: {profile_id!r}"
            )
        return directory / f"{profile_id}.json"

    def _load(self, profile_id: "str") -> "list[UsageSnapshot]":
        """
        returns the cached history, reading it from disk on first use.
        Must be called with the lock held.
        """
        if profile_id in self._histories:
            return self._histories[profile_id]

        history: "list[UsageSnapshot]" = []
        if self._directory is not None:
            path = self._path(self._directory, profile_id)
            if path.exists():
                try:
                    document = json.loads(path.read_text(encoding="utf-8"))
                    history = [
                        UsageSnapshot.from_dict(d) for d in document["snapshots"]
                    ]
                except (OSError, ValueError, KeyError, TypeError) as exc:
                    raise StoreError(f"failed to load history {path}: {exc}") from exc

        self._histories[profile_id] = history
        return history

    def _commit(self, profile_id: "str", history: "list[UsageSnapshot]") -> "None":
        """
        persists the new history first, then swaps it into the cache so
        memory never diverges from disk. Must be called with the lock held.
        """
        if self._directory is not None:
            path = self._path(self._directory, profile_id)
            document = {"snapshots": [s.to_dict() for s in history]}
            try:
                self._directory.mkdir(parents=True, exist_ok=True)
                fd, tmp = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as fh:
                        json.dump(document, fh, indent=2, sort_keys=True)
                    os.replace(tmp, path)
                except BaseException:
                    if os.path.exists(tmp):
                        os.unlink(tmp)
                    raise
            except OSError as exc:
                raise StoreError(f"failed to persist history {path}: {exc}") from exc

        self._histories[profile_id] = history
