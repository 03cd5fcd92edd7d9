"""Scan orchestration: single-flight state machine over all search phrases."""

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional, Protocol

from niche_scanner import metrics
from niche_scanner.config import settings
from niche_scanner.db.ledger import ResultLedger
from niche_scanner.exceptions import ConflictError, ExternalServiceError, ValidationError
from niche_scanner.ingest.conditions import normalize_condition_codes
from niche_scanner.ingest.ebay import ItemSummary
from niche_scanner.ingest.phrase_fetcher import PhraseListingFetcher
from niche_scanner.logging_config import RecentMessagesHandler
from niche_scanner.notify.exporter import NullExporter, ScanExporter
from niche_scanner.utils.time import utcnow
from niche_scanner.worker.state import ScanProgress, ScanState, ScanStatus

logger = logging.getLogger(__name__)

# Scan log messages are collected from every module of the package
PACKAGE_LOGGER = "niche_scanner"


class TokenProvider(Protocol):
    async def get_token(self) -> str: ...


@dataclass(frozen=True)
class ScanRequest:
    """Validated parameters of an accepted scan."""

    search_phrases: tuple[str, ...]
    typical_phrases: tuple[str, ...]
    feedback_threshold: int
    condition_whitelist: frozenset[str]
    search_id: Optional[int] = None
    label: str = "scan"


def _clean_phrases(value, field_name: str) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise ValidationError(f"{field_name} must be a list of strings")

    phrases = []
    for phrase in value:
        if not isinstance(phrase, str) or not phrase.strip():
            raise ValidationError(f"{field_name} must contain only non-empty strings")
        phrases.append(phrase.strip())

    if not phrases:
        raise ValidationError(f"{field_name} must not be empty")
    return tuple(phrases)


def validate_scan_params(
    search_phrases,
    typical_phrases,
    feedback_threshold,
    condition_whitelist,
    *,
    search_id: Optional[int] = None,
    label: str = "scan",
) -> ScanRequest:
    """
    Validate raw scan parameters.

    Raises:
        ValidationError: if any parameter is malformed
    """
    phrases = _clean_phrases(search_phrases, "search_phrases")
    typical = _clean_phrases(typical_phrases, "typical_phrases")

    # bool is an int subclass
    if isinstance(feedback_threshold, bool) or not isinstance(feedback_threshold, int):
        raise ValidationError("feedback_threshold must be an integer")
    if feedback_threshold <= 0:
        raise ValidationError("feedback_threshold must be positive")

    if isinstance(condition_whitelist, str) or not isinstance(condition_whitelist, Iterable):
        raise ValidationError("condition_whitelist must be a list of condition codes")
    codes = normalize_condition_codes(condition_whitelist)
    if not codes:
        raise ValidationError("condition_whitelist must not be empty")

    return ScanRequest(
        search_phrases=phrases,
        typical_phrases=typical,
        feedback_threshold=feedback_threshold,
        condition_whitelist=codes,
        search_id=search_id,
        label=label,
    )


class ScanOrchestrator:
    """
    Runs scans one at a time and owns the scan state.

    A scan is accepted with claim(), which validates and sets the in-progress
    flag without suspending, and executed with run(). start_scan() does both.
    """

    def __init__(
        self,
        fetcher: PhraseListingFetcher,
        ledger: ResultLedger,
        token_provider: TokenProvider,
        exporter: Optional[ScanExporter] = None,
        dedup_window_days: Optional[int] = None,
        stale_after_days: Optional[int] = None,
    ):
        self.fetcher = fetcher
        self.ledger = ledger
        self.token_provider = token_provider
        self.exporter = exporter or NullExporter()
        self.dedup_window_days = (
            dedup_window_days if dedup_window_days is not None else settings.dedup_window_days
        )
        self.stale_after_days = (
            stale_after_days if stale_after_days is not None else settings.stale_after_days
        )
        self.state = ScanState()
        self._log_buffer = RecentMessagesHandler()

    @property
    def is_scanning(self) -> bool:
        return self.state.in_progress

    def snapshot(self) -> ScanState:
        """Copy of the current state including the recent log messages."""
        self.state.log_messages = self._log_buffer.messages
        return self.state.snapshot()

    def claim(
        self,
        search_phrases,
        typical_phrases,
        feedback_threshold,
        condition_whitelist,
        *,
        search_id: Optional[int] = None,
        label: str = "scan",
    ) -> ScanRequest:
        """
        Validate parameters and take the single-flight flag.

        Raises:
            ValidationError: if parameters are malformed (state untouched)
            ConflictError: if a scan is already running (state untouched)
        """
        request = validate_scan_params(
            search_phrases,
            typical_phrases,
            feedback_threshold,
            condition_whitelist,
            search_id=search_id,
            label=label,
        )
        if self.state.in_progress:
            raise ConflictError("A scan is already in progress")

        self.state.in_progress = True
        self.state.status = ScanStatus.SCANNING
        self.state.listings = []
        self.state.error = None
        self.state.log_messages = []
        self.state.progress = ScanProgress(total_phrases=len(request.search_phrases))
        self._log_buffer.clear()
        return request

    async def start_scan(
        self,
        search_phrases,
        typical_phrases,
        feedback_threshold,
        condition_whitelist,
        *,
        search_id: Optional[int] = None,
        label: str = "scan",
    ) -> list[ItemSummary]:
        """Validate, claim and run a scan. Returns the aggregated listings."""
        request = self.claim(
            search_phrases,
            typical_phrases,
            feedback_threshold,
            condition_whitelist,
            search_id=search_id,
            label=label,
        )
        return await self.run(request)

    async def run(self, request: ScanRequest) -> list[ItemSummary]:
        """
        Execute a claimed scan.

        Phrase-level marketplace failures count as empty phrases. Anything
        else moves the scan to the error state and is re-raised; listings
        aggregated up to that point stay in the state.
        """
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        package_logger.addHandler(self._log_buffer)
        started = time.monotonic()

        try:
            await self._execute(request)
        except Exception as e:
            self.state.status = ScanStatus.ERROR
            self.state.error = str(e) or type(e).__name__
            self.state.last_updated = utcnow()
            metrics.scans_total.labels(status="error").inc()
            logger.error(f"Scan failed: {self.state.error}")
            raise
        else:
            self.state.status = ScanStatus.COMPLETED
            self.state.last_updated = utcnow()
            metrics.scans_total.labels(status="completed").inc()
            metrics.scan_listings_found.set(len(self.state.listings))
            logger.info(f"Scan completed: {len(self.state.listings)} listings found")
            await self._export(request.label)
        finally:
            metrics.scan_duration_seconds.observe(time.monotonic() - started)
            self.state.log_messages = self._log_buffer.messages
            package_logger.removeHandler(self._log_buffer)
            self.state.in_progress = False

        return list(self.state.listings)

    async def _execute(self, request: ScanRequest) -> None:
        total = len(request.search_phrases)
        logger.info(f"Starting scan of {total} phrases")

        await self.ledger.mark_stale_inactive(self.stale_after_days)
        access_token = await self.token_provider.get_token()
        known_ids = await self._known_item_ids(request.search_id)
        if known_ids:
            logger.info(f"Skipping {len(known_ids)} items seen in the last {self.dedup_window_days} days")

        for index, phrase in enumerate(request.search_phrases, start=1):
            self.state.progress.start_phrase(phrase, index, total)
            logger.info(f'Processing phrase {index}/{total}: "{phrase}"')
            try:
                found = await self.fetcher.fetch_for_phrase(
                    phrase,
                    request.typical_phrases,
                    request.feedback_threshold,
                    request.condition_whitelist,
                    access_token=access_token,
                    skip_item_ids=known_ids,
                    progress=self.state.progress,
                )
            except ExternalServiceError as e:
                metrics.phrase_failures_total.labels(error_type=type(e).__name__).inc()
                logger.warning(f'Error processing phrase "{phrase}": {e}')
            else:
                self.state.listings.extend(found)
            self.state.progress.completed_phrases = index

        if self.state.listings:
            await self.ledger.record_listings(self.state.listings, search_id=request.search_id)
            logger.info(f"Recorded {len(self.state.listings)} listings")

    async def _known_item_ids(self, search_id: Optional[int]) -> frozenset[str]:
        """
        Item ids to skip in this scan.

        A saved search skips only what it already found itself within the
        dedup window, so another search can still map and refresh a shared
        item. Ad-hoc scans have no mapping and skip anything seen recently.
        """
        if search_id is None:
            return frozenset(await self.ledger.recent_item_ids(self.dedup_window_days))
        results = await self.ledger.existing_results_for_search(search_id, self.dedup_window_days)
        return frozenset(item.item_id for item in results)

    async def _export(self, label: str) -> None:
        if not self.state.listings:
            return
        try:
            path = await self.exporter.export(list(self.state.listings), label)
        except Exception as e:
            logger.error(f"Failed to export scan results: {e}")
            return
        if path is not None:
            logger.info(f"Scan results exported to {path}")
