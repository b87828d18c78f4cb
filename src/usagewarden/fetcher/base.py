from typing import Protocol

from usagewarden.models import SourceKind, UsageReading


class UsageFetcher(Protocol):
    """
    UsageFetcher stands as the common protocol for anything that
    turns a credential into a normalized usage reading.

    Implementations report only the windows their source knows about
    and raise FetchError on failure. The coordinator bounds every call
    with its own timeout, so fetchers need not enforce one.
    """

    async def fetch(
        self,
        handle: "str",
        source: "SourceKind",
    ) -> "UsageReading": ...
