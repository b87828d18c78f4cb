import asyncio
import json
from pathlib import Path

import structlog

from usagewarden.errors import FetchError
from usagewarden.models import SOURCE_WINDOWS, SourceKind, UsageReading, WindowKind

logger = structlog.get_logger()


class FileUsageFetcher:
    """
    FileUsageFetcher reads already-normalized readings that another
    process drops into a directory, one file per credential and
    source: <directory>/<handle>.<source>.json. Windows the source
    cannot report are stripped from the result.
    """

    def __init__(self, directory: "str | Path") -> "None":
        self._directory = Path(directory)

    def path_for(self, handle: "str", source: "SourceKind") -> "Path":
        return self._directory / f"{handle}.{source.value}.json"

    async def fetch(
        self,
        handle: "str",
        source: "SourceKind",
    ) -> "UsageReading":
        path = self.path_for(handle, source)
        logger.debug("file_fetch", path=str(path))

        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError as exc:
            raise FetchError(source.value, f"no reading at {path}") from exc
        except OSError as exc:
            raise FetchError(source.value, f"cannot read {path}: {exc}") from exc

        try:
            reading = UsageReading.from_dict(json.loads(text))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise FetchError(
                source.value, f"malformed reading in {path}: {exc}"
            ) from exc

        for kind in WindowKind:
            if kind not in SOURCE_WINDOWS[source] and reading.window(kind) is not None:
                reading = reading.with_window(kind, None)

        return reading
