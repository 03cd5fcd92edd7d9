"""Per-phrase candidate retrieval, prefiltering and seller qualification."""

import logging
from dataclasses import dataclass
from typing import AbstractSet, Optional, Protocol, Sequence

from niche_scanner import metrics
from niche_scanner.config import settings
from niche_scanner.detect.qualifier import SellerQualifier
from niche_scanner.ingest.conditions import get_condition_name, resolve_condition_code
from niche_scanner.ingest.ebay import ItemSummary
from niche_scanner.worker.state import ScanProgress

logger = logging.getLogger(__name__)


class ListingSearchSource(Protocol):
    async def search_items(
        self, phrase: str, limit: int, access_token: str
    ) -> list[ItemSummary]: ...


@dataclass
class PhraseStats:
    """Counters for one phrase fetch, logged at the end of the cycle."""

    candidates: int = 0
    skipped_known: int = 0
    unknown_condition: int = 0
    filtered_condition: int = 0
    missing_seller: int = 0
    sellers: int = 0
    skipped_feedback: int = 0
    qualified_sellers: int = 0


class PhraseListingFetcher:
    """
    Fetches one search phrase and keeps a single listing per qualifying seller.

    Filter order per phrase:
    1. drop items captured within the dedup window
    2. drop items with unknown or non-whitelisted condition
    3. group by seller, drop items without a seller
    4. per seller: skip when feedback >= threshold (no inventory calls),
       otherwise assess once and keep the seller's first item if included
    """

    def __init__(
        self,
        search: ListingSearchSource,
        qualifier: SellerQualifier,
        result_limit: Optional[int] = None,
    ):
        self.search = search
        self.qualifier = qualifier
        self.result_limit = result_limit or settings.search_result_limit

    async def fetch_for_phrase(
        self,
        phrase: str,
        typical_phrases: Sequence[str],
        feedback_threshold: int,
        condition_whitelist: AbstractSet[str],
        *,
        access_token: str,
        skip_item_ids: AbstractSet[str] = frozenset(),
        progress: Optional[ScanProgress] = None,
    ) -> list[ItemSummary]:
        """
        Return the qualifying listings for one phrase.

        Marketplace errors from the search call propagate; the caller decides
        whether the phrase counts as empty.
        """
        items = await self.search.search_items(phrase, self.result_limit, access_token)
        stats = PhraseStats(candidates=len(items))

        if not items:
            logger.info(f'No listings found for phrase "{phrase}"')
            return []

        logger.info(f'Found {len(items)} total listings for phrase "{phrase}"')

        valid_items: list[ItemSummary] = []
        for item in items:
            if item.item_id in skip_item_ids:
                stats.skipped_known += 1
                continue

            code = resolve_condition_code(item.condition)
            if code is None:
                stats.unknown_condition += 1
                logger.debug(f'No match found for condition "{item.condition}" ({item.item_id})')
                continue
            if code not in condition_whitelist:
                stats.filtered_condition += 1
                logger.debug(
                    f'Filtered out "{item.title}": {get_condition_name(code)} (ID: {code})'
                )
                continue
            valid_items.append(item)

        # One entry per seller, so each seller is assessed at most once per call.
        # dicts keep insertion order, so the first item per seller is the representative
        seller_items: dict[str, list[ItemSummary]] = {}
        for item in valid_items:
            if not item.seller_username:
                stats.missing_seller += 1
                continue
            seller_items.setdefault(item.seller_username, []).append(item)

        if stats.missing_seller:
            logger.info(f"Skipped {stats.missing_seller} listings with missing seller information")

        stats.sellers = len(seller_items)
        if progress is not None:
            progress.total_sellers = stats.sellers
        logger.info(f"Processing {stats.sellers} unique sellers for \"{phrase}\"")

        qualifying: list[ItemSummary] = []

        for index, (seller, listings) in enumerate(seller_items.items(), start=1):
            feedback_score = listings[0].seller_feedback_score
            if feedback_score >= feedback_threshold:
                stats.skipped_feedback += 1
                metrics.sellers_skipped_feedback_total.inc()
                logger.info(
                    f"Skipping {seller}: feedback score {feedback_score} >= {feedback_threshold}"
                )
            else:
                assessment = await self.qualifier.assess(seller, typical_phrases)

                if not assessment.exclude:
                    stats.qualified_sellers += 1
                    if progress is not None:
                        progress.qualified_sellers += 1
                    representative = listings[0]
                    qualifying.append(representative)
                    logger.info(
                        f'Seller qualified: {seller}, added "{representative.title}" '
                        f"({representative.item_id})"
                    )
                elif assessment.error:
                    logger.info(f"Seller excluded: {seller} (Error: {assessment.error_message})")
                else:
                    logger.info(f"Seller excluded: {seller}")

            if progress is not None:
                progress.sellers_processed = index

        logger.info(
            f'Phrase "{phrase}" complete: {stats.candidates} candidates, '
            f"{stats.skipped_known} already known, "
            f"{stats.unknown_condition + stats.filtered_condition} filtered by condition, "
            f"{stats.sellers} sellers, {stats.skipped_feedback} skipped by feedback, "
            f"{stats.qualified_sellers} qualified"
        )
        return qualifying
