import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from usagewarden.errors import FetchError
from usagewarden.fetcher.file import FileUsageFetcher
from usagewarden.models import SourceKind, to_iso


def _document(t0: "datetime") -> "dict":
    return {
        "fetched_at": to_iso(t0),
        "session": {
            "tokens_used": 4200,
            "limit": 10000,
            "percentage": 42.0,
            "reset_at": to_iso(t0 + timedelta(hours=5)),
        },
        "weekly": {
            "tokens_used": 10000,
            "limit": 100000,
            "percentage": 10.0,
            "reset_at": to_iso(t0 + timedelta(days=7)),
            "models": [{"model": "opus", "tokens_used": 4000, "percentage": 4.0}],
        },
        "billing": {
            "spend_cents": 1234,
            "prepaid_credits_cents": None,
            "currency": "USD",
            "reset_at": to_iso(t0 + timedelta(days=30)),
        },
        "capabilities": ["claude_max"],
    }


class TestFileUsageFetcher:
    @pytest.mark.asyncio
    async def test_reads_web_reading(self, tmp_path: "Path", t0: "datetime") -> "None":
        fetcher = FileUsageFetcher(tmp_path)
        fetcher.path_for("h1", SourceKind.WEB).write_text(json.dumps(_document(t0)))

        reading = await fetcher.fetch("h1", SourceKind.WEB)

        assert reading.fetched_at == t0
        assert reading.session is not None
        assert reading.session.percentage == 42.0
        assert reading.weekly is not None
        assert reading.weekly.models[0].model == "opus"
        # the web source cannot report billing
        assert reading.billing is None
        assert reading.capabilities == frozenset({"claude_max"})

    @pytest.mark.asyncio
    async def test_api_console_only_reports_billing(
        self, tmp_path: "Path", t0: "datetime"
    ) -> "None":
        fetcher = FileUsageFetcher(tmp_path)
        fetcher.path_for("h1", SourceKind.API_CONSOLE).write_text(
            json.dumps(_document(t0))
        )

        reading = await fetcher.fetch("h1", SourceKind.API_CONSOLE)

        assert reading.session is None
        assert reading.weekly is None
        assert reading.billing is not None
        assert reading.billing.spend_cents == 1234

    def test_path_layout(self, tmp_path: "Path") -> "None":
        fetcher = FileUsageFetcher(tmp_path)
        path = fetcher.path_for("abc", SourceKind.CLI_OAUTH)
        assert path == tmp_path / "abc.cli_oauth.json"

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path: "Path") -> "None":
        fetcher = FileUsageFetcher(tmp_path)

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch("h1", SourceKind.WEB)

        assert exc_info.value.source == "web"

    @pytest.mark.asyncio
    async def test_malformed_file(self, tmp_path: "Path") -> "None":
        fetcher = FileUsageFetcher(tmp_path)
        fetcher.path_for("h1", SourceKind.WEB).write_text(
            '{"session": {"percentage": 1}}'
        )

        with pytest.raises(FetchError):
            await fetcher.fetch("h1", SourceKind.WEB)
