"""Background tasks for saved-search scans."""

import logging

from niche_scanner.db.ledger import ResultLedger
from niche_scanner.db.models import SavedSearch
from niche_scanner.exceptions import ConflictError, ScannerError
from niche_scanner.ingest.ebay import ItemSummary
from niche_scanner.worker.scanner import ScanOrchestrator, ScanRequest

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runner for background tasks.

    Saved searches are replayed through the orchestrator with their results
    mapped back to the search, so one orchestrator serves both ad-hoc and
    saved scans.
    """

    def __init__(self, orchestrator: ScanOrchestrator, ledger: ResultLedger):
        self.orchestrator = orchestrator
        self.ledger = ledger

    async def _load_search(self, search_id: int) -> SavedSearch:
        search = await self.ledger.get_search_config(search_id)
        if search is None:
            raise LookupError(f"Saved search {search_id} not found")
        return search

    def claim_saved_search(self, search: SavedSearch) -> ScanRequest:
        """Claim the orchestrator for a saved search without running it."""
        return self.orchestrator.claim(
            search.search_phrases,
            search.typical_phrases,
            search.feedback_threshold,
            search.conditions,
            search_id=search.id,
            label=search.name,
        )

    async def run_saved_search(self, search_id: int) -> list[ItemSummary]:
        """
        Run a scan for a saved search.

        Raises:
            LookupError: if the search does not exist
            ConflictError: if a scan is already running
        """
        search = await self._load_search(search_id)
        logger.info(f"Running saved search {search.name!r} ({search_id})")
        request = self.claim_saved_search(search)
        return await self.orchestrator.run(request)

    async def run_claimed(self, request: ScanRequest) -> None:
        """Run an already claimed scan; its outcome is kept in the scan state."""
        try:
            await self.orchestrator.run(request)
        except ScannerError as e:
            logger.warning(f"Background scan {request.label!r} ended with error: {e}")

    async def rescan_saved_searches(self) -> int:
        """
        Re-run every saved search in turn.

        Returns:
            Number of searches that completed
        """
        searches = await self.ledger.list_search_configs()
        if not searches:
            logger.info("No saved searches to rescan")
            return 0

        completed = 0
        for search in searches:
            try:
                request = self.claim_saved_search(search)
            except ConflictError:
                logger.info(f"Skipping saved search {search.name!r}: a scan is already in progress")
                continue
            except ScannerError as e:
                logger.warning(f"Skipping saved search {search.name!r}: {e}")
                continue

            try:
                await self.orchestrator.run(request)
            except ScannerError as e:
                logger.error(f"Saved search {search.name!r} failed: {e}")
                continue
            completed += 1

        logger.info(f"Rescanned {completed}/{len(searches)} saved searches")
        return completed
