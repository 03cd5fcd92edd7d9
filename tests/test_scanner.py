"""Tests for the scan orchestrator state machine."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from niche_scanner.db.ledger import ResultLedger
from niche_scanner.detect.qualifier import SellerQualifier
from niche_scanner.exceptions import (
    AuthenticationError,
    ConflictError,
    HTTPStatusFailure,
    PersistenceError,
    RequestTimeoutError,
    ValidationError,
)
from niche_scanner.ingest.ebay import ItemSummary
from niche_scanner.ingest.phrase_fetcher import PhraseListingFetcher
from niche_scanner.worker.scanner import ScanOrchestrator, validate_scan_params
from niche_scanner.worker.state import ScanStatus

SEARCH_URL = "https://api.ebay.com/buy/browse/v1/item_summary/search"


def _ledger_mock(recent_ids=frozenset(), search_results=()):
    ledger = AsyncMock(spec=ResultLedger)
    ledger.mark_stale_inactive.return_value = 0
    ledger.recent_item_ids.return_value = set(recent_ids)
    ledger.existing_results_for_search.return_value = [
        SimpleNamespace(item_id=item_id) for item_id in search_results
    ]
    ledger.record_listings.return_value = 0
    return ledger


def _token_provider():
    token_provider = MagicMock()
    token_provider.get_token = AsyncMock(return_value="token")
    return token_provider


def _orchestrator(fetch_results, ledger=None, exporter=None, token_provider=None):
    fetcher = MagicMock()
    fetcher.fetch_for_phrase = AsyncMock(side_effect=fetch_results)
    orchestrator = ScanOrchestrator(
        fetcher=fetcher,
        ledger=ledger or _ledger_mock(),
        token_provider=token_provider or _token_provider(),
        exporter=exporter,
        dedup_window_days=7,
        stale_after_days=90,
    )
    return orchestrator, fetcher


class StaticSearch:
    """Marketplace search that always returns the same listings."""

    def __init__(self, items: list[ItemSummary]):
        self.items = items

    async def search_items(self, phrase: str, limit: int, access_token: str) -> list[ItemSummary]:
        return list(self.items)


class GeneralistInventory:
    """Every seller has 10 listings, one of them a brooch."""

    async def seller_total_listings(self, seller_username: str) -> int:
        return 10

    async def seller_listings(self, seller_username: str, limit: int) -> list[ItemSummary]:
        return [
            ItemSummary(item_id=f"{seller_username}-{i}", title="Brooch" if i == 0 else "Hand tools")
            for i in range(limit)
        ]


class TestScanRun:
    """Test a scan from claim to completion."""

    async def test_scan_completes_and_aggregates(self, make_item):
        """Listings from every phrase are aggregated, persisted and exported."""
        first, second = make_item("1", seller="a"), make_item("2", seller="b")
        exporter = MagicMock()
        exporter.export = AsyncMock(return_value=None)
        ledger = _ledger_mock(search_results={"known"})
        orchestrator, fetcher = _orchestrator([[first], [second]], ledger=ledger, exporter=exporter)

        listings = await orchestrator.start_scan(
            ["brooch lot", "pin lot"], ["brooch"], 5000, ["USED"], search_id=3, label="brooches"
        )

        assert [item.item_id for item in listings] == ["1", "2"]
        state = orchestrator.snapshot()
        assert state.status == ScanStatus.COMPLETED
        assert state.in_progress is False
        assert state.error is None
        assert state.last_updated is not None
        assert [item.item_id for item in state.listings] == ["1", "2"]

        ledger.mark_stale_inactive.assert_awaited_once_with(90)
        ledger.record_listings.assert_awaited_once()
        assert ledger.record_listings.await_args.kwargs["search_id"] == 3

        kwargs = fetcher.fetch_for_phrase.await_args_list[0].kwargs
        assert kwargs["access_token"] == "token"

        exporter.export.assert_awaited_once()
        assert exporter.export.await_args.args[1] == "brooches"

    async def test_phrase_failure_treated_as_empty(self, make_item):
        """Marketplace errors on a phrase do not stop the scan."""
        orchestrator, fetcher = _orchestrator(
            [
                HTTPStatusFailure(SEARCH_URL, 500, "boom"),
                RequestTimeoutError(SEARCH_URL, 5000),
                [make_item("3", seller="c")],
            ]
        )

        listings = await orchestrator.start_scan(["one", "two", "three"], ["brooch"], 5000, ["3000"])

        assert [item.item_id for item in listings] == ["3"]
        assert fetcher.fetch_for_phrase.await_count == 3
        assert orchestrator.state.status == ScanStatus.COMPLETED
        assert orchestrator.state.progress.completed_phrases == 3
        assert orchestrator.state.progress.progress_percent == 100.0

    async def test_no_export_or_persist_for_empty_scan(self):
        """An empty result is neither persisted nor exported."""
        exporter = MagicMock()
        exporter.export = AsyncMock()
        ledger = _ledger_mock()
        orchestrator, _ = _orchestrator([[]], ledger=ledger, exporter=exporter)

        listings = await orchestrator.start_scan(["lot"], ["brooch"], 5000, ["3000"])

        assert listings == []
        assert orchestrator.state.status == ScanStatus.COMPLETED
        exporter.export.assert_not_awaited()
        ledger.record_listings.assert_not_awaited()

    async def test_snapshot_is_a_copy(self, make_item):
        """Mutating a snapshot leaves the live state alone."""
        orchestrator, _ = _orchestrator([[make_item("1", seller="a")]])
        await orchestrator.start_scan(["lot"], ["brooch"], 5000, ["3000"])

        snapshot = orchestrator.snapshot()
        snapshot.listings.clear()

        assert len(orchestrator.state.listings) == 1


class TestDedupSkipSet:
    """Test which previously found items a scan skips."""

    async def test_saved_search_skips_only_its_own_results(self):
        """A saved search loads its own recent results, not every recent item."""
        ledger = _ledger_mock(recent_ids={"other-search"}, search_results={"mine"})
        orchestrator, fetcher = _orchestrator([[]], ledger=ledger)

        await orchestrator.start_scan(["lot"], ["brooch"], 5000, ["3000"], search_id=3)

        ledger.existing_results_for_search.assert_awaited_once_with(3, 7)
        ledger.recent_item_ids.assert_not_awaited()
        assert fetcher.fetch_for_phrase.await_args.kwargs["skip_item_ids"] == frozenset({"mine"})

    async def test_adhoc_scan_skips_all_recent_items(self):
        """A scan without a saved search skips every recently seen item."""
        ledger = _ledger_mock(recent_ids={"known"})
        orchestrator, fetcher = _orchestrator([[]], ledger=ledger)

        await orchestrator.start_scan(["lot"], ["brooch"], 5000, ["3000"])

        ledger.recent_item_ids.assert_awaited_once_with(7)
        ledger.existing_results_for_search.assert_not_awaited()
        assert fetcher.fetch_for_phrase.await_args.kwargs["skip_item_ids"] == frozenset({"known"})

    async def test_real_ledger_records_mapped_results(self, ledger, make_item):
        """Scan results are mapped to the saved search in the ledger."""
        search_id = await ledger.save_search_config("lots", ["lot"], ["brooch"], 5000, ["3000"])
        orchestrator, _ = _orchestrator([[make_item("v1|123456789", seller="a")]], ledger=ledger)

        await orchestrator.start_scan(["lot"], ["brooch"], 5000, ["3000"], search_id=search_id)

        results = await ledger.all_results_for_search(search_id)
        assert [r.item_id for r in results] == ["v1|123456789"]
        assert await ledger.recent_item_ids(7) == {"v1|123456789"}

    async def test_second_saved_search_maps_shared_item(self, ledger, make_item):
        """Two saved searches finding the same item both get it."""
        shared = make_item("v1|123456789", "Vintage brooch lot", seller="grannys_attic")
        fetcher = PhraseListingFetcher(
            StaticSearch([shared]), SellerQualifier(GeneralistInventory()), result_limit=200
        )
        orchestrator = ScanOrchestrator(
            fetcher, ledger, _token_provider(), dedup_window_days=7, stale_after_days=90
        )
        first = await ledger.save_search_config("first", ["brooch lot"], ["brooch"], 5000, ["3000"])
        second = await ledger.save_search_config("second", ["pin lot"], ["brooch"], 5000, ["3000"])

        first_listings = await orchestrator.start_scan(
            ["brooch lot"], ["brooch"], 5000, ["3000"], search_id=first
        )
        first_seen = (await ledger.all_results_for_search(first))[0].last_seen_at
        second_listings = await orchestrator.start_scan(
            ["pin lot"], ["brooch"], 5000, ["3000"], search_id=second
        )

        assert [item.item_id for item in first_listings] == ["v1|123456789"]
        assert [item.item_id for item in second_listings] == ["v1|123456789"]
        first_results = await ledger.all_results_for_search(first)
        second_results = await ledger.all_results_for_search(second)
        assert [r.item_id for r in first_results] == ["v1|123456789"]
        assert [r.item_id for r in second_results] == ["v1|123456789"]
        assert second_results[0].last_seen_at >= first_seen

        # The first search now skips what it already found
        repeat = await orchestrator.start_scan(
            ["brooch lot"], ["brooch"], 5000, ["3000"], search_id=first
        )
        assert repeat == []


class TestSingleFlight:
    """Test that only one scan runs at a time."""

    async def test_second_scan_rejected_while_running(self, make_item):
        """A concurrent start is rejected and the running scan is untouched."""
        release = asyncio.Event()

        async def slow_fetch(*args, **kwargs):
            await release.wait()
            return [make_item("1", seller="a")]

        orchestrator, fetcher = _orchestrator(None)
        fetcher.fetch_for_phrase = AsyncMock(side_effect=slow_fetch)

        running = asyncio.create_task(
            orchestrator.start_scan(["lot"], ["brooch"], 5000, ["3000"])
        )
        while fetcher.fetch_for_phrase.await_count == 0:
            await asyncio.sleep(0)

        assert orchestrator.is_scanning
        with pytest.raises(ConflictError, match="A scan is already in progress"):
            await orchestrator.start_scan(["other"], ["pin"], 100, ["1000"])

        # The running scan is untouched
        assert orchestrator.state.status == ScanStatus.SCANNING
        assert orchestrator.state.progress.current_phrase == "lot"

        release.set()
        listings = await running
        assert [item.item_id for item in listings] == ["1"]
        assert fetcher.fetch_for_phrase.await_count == 1
        assert not orchestrator.is_scanning


class TestValidation:
    """Test parameter validation."""

    @pytest.mark.parametrize(
        "phrases,typical,threshold,conditions",
        [
            ([], ["brooch"], 5000, ["3000"]),
            (["  "], ["brooch"], 5000, ["3000"]),
            ("brooch lot", ["brooch"], 5000, ["3000"]),
            (["lot"], [], 5000, ["3000"]),
            (["lot"], ["brooch"], 0, ["3000"]),
            (["lot"], ["brooch"], -5, ["3000"]),
            (["lot"], ["brooch"], True, ["3000"]),
            (["lot"], ["brooch"], "5000", ["3000"]),
            (["lot"], ["brooch"], 5000, []),
            (["lot"], ["brooch"], 5000, ["9999"]),
            (["lot"], ["brooch"], 5000, "USED"),
        ],
    )
    async def test_invalid_params_rejected_without_state_change(
        self, phrases, typical, threshold, conditions
    ):
        """Malformed parameters raise before any state change."""
        orchestrator, fetcher = _orchestrator([[]])

        with pytest.raises(ValidationError):
            await orchestrator.start_scan(phrases, typical, threshold, conditions)

        assert orchestrator.state.status == ScanStatus.IDLE
        assert not orchestrator.is_scanning
        fetcher.fetch_for_phrase.assert_not_awaited()

    def test_accepts_condition_keys(self):
        """Phrases are trimmed and condition keys resolve to codes."""
        request = validate_scan_params([" lot "], ["brooch"], 10, ["used", "1000"])

        assert request.search_phrases == ("lot",)
        assert request.condition_whitelist == frozenset({"3000", "1000"})


class TestFailures:
    """Test scan-fatal and non-fatal failures."""

    async def test_persistence_failure_is_fatal_and_releases_flag(self, make_item):
        """A ledger failure ends the scan in error, keeping aggregated listings."""
        ledger = _ledger_mock()
        ledger.record_listings.side_effect = PersistenceError("disk full")
        exporter = MagicMock()
        exporter.export = AsyncMock()
        orchestrator, _ = _orchestrator([[make_item("1", seller="a")]], ledger=ledger, exporter=exporter)

        with pytest.raises(PersistenceError):
            await orchestrator.start_scan(["lot"], ["brooch"], 5000, ["3000"])

        state = orchestrator.snapshot()
        assert state.status == ScanStatus.ERROR
        assert state.error == "disk full"
        assert [item.item_id for item in state.listings] == ["1"]
        assert state.in_progress is False
        exporter.export.assert_not_awaited()

        # error is terminal; a new scan is accepted
        ledger.record_listings.side_effect = None
        orchestrator.fetcher.fetch_for_phrase = AsyncMock(return_value=[])
        await orchestrator.start_scan(["lot"], ["brooch"], 5000, ["3000"])
        assert orchestrator.state.status == ScanStatus.COMPLETED
        assert orchestrator.state.error is None
        assert orchestrator.state.listings == []

    async def test_token_failure_is_fatal(self):
        """No token means no phrase is fetched."""
        token_provider = MagicMock()
        token_provider.get_token = AsyncMock(side_effect=AuthenticationError("Missing eBay API credentials"))
        orchestrator, fetcher = _orchestrator([[]], token_provider=token_provider)

        with pytest.raises(AuthenticationError):
            await orchestrator.start_scan(["lot"], ["brooch"], 5000, ["3000"])

        assert orchestrator.state.status == ScanStatus.ERROR
        assert orchestrator.state.error == "Missing eBay API credentials"
        assert not orchestrator.is_scanning
        fetcher.fetch_for_phrase.assert_not_awaited()

    async def test_export_failure_only_logged(self, make_item):
        """A failing export leaves the scan completed."""
        exporter = MagicMock()
        exporter.export = AsyncMock(side_effect=OSError("read-only file system"))
        orchestrator, _ = _orchestrator([[make_item("1", seller="a")]], exporter=exporter)

        listings = await orchestrator.start_scan(["lot"], ["brooch"], 5000, ["3000"])

        assert len(listings) == 1
        assert orchestrator.state.status == ScanStatus.COMPLETED
        exporter.export.assert_awaited_once()
