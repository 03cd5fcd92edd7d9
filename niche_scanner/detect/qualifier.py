"""Seller qualification by sampled inventory overlap with the target niche."""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Sequence

from niche_scanner import metrics
from niche_scanner.exceptions import ExternalServiceError
from niche_scanner.ingest.ebay import ItemSummary

logger = logging.getLogger(__name__)

# Sellers are sampled on at most this many listings
SELLER_SAMPLE_CAP = 100

# Sellers whose sample matches the niche above this percentage are specialists
MAX_NICHE_RATIO = 20.0


class SellerInventorySource(Protocol):
    async def seller_total_listings(self, seller_username: str) -> int: ...

    async def seller_listings(self, seller_username: str, limit: int) -> list[ItemSummary]: ...


@dataclass
class SellerAssessment:
    """Verdict for one seller. Never persisted."""

    seller_username: str
    sample_size: int
    match_count: int
    ratio: float
    exclude: bool
    error: bool = False
    error_message: Optional[str] = None

    @property
    def decision(self) -> str:
        if self.error:
            return "error"
        return "excluded" if self.exclude else "included"


def title_matches(title: str, typical_phrases: Iterable[str]) -> bool:
    lowered = title.lower()
    return any(phrase.lower() in lowered for phrase in typical_phrases)


def compute_assessment(
    seller_username: str,
    titles: Sequence[str],
    typical_phrases: Sequence[str],
) -> SellerAssessment:
    """
    Score a seller from the titles of their sampled listings.

    A seller is included only when 0 < ratio <= MAX_NICHE_RATIO: no overlap
    means they do not sell the niche at all, a high overlap means they are a
    specialist.
    """
    sample_size = len(titles)
    match_count = sum(1 for title in titles if title_matches(title, typical_phrases))
    ratio = (match_count / sample_size) * 100 if sample_size else 0.0
    exclude = ratio > MAX_NICHE_RATIO or ratio == 0
    return SellerAssessment(
        seller_username=seller_username,
        sample_size=sample_size,
        match_count=match_count,
        ratio=ratio,
        exclude=exclude,
    )


class SellerQualifier:
    """Samples a seller's inventory and decides whether the seller is in scope."""

    def __init__(self, inventory: SellerInventorySource, sample_cap: int = SELLER_SAMPLE_CAP):
        self.inventory = inventory
        self.sample_cap = sample_cap

    async def assess(
        self,
        seller_username: str,
        typical_phrases: Sequence[str],
    ) -> SellerAssessment:
        """
        Assess one seller.

        Any marketplace failure while sampling resolves to a fail-safe
        exclusion flagged with error=True.
        """
        try:
            total = await self.inventory.seller_total_listings(seller_username)
            sample_limit = min(max(total, 0), self.sample_cap)
            logger.info(f"Total listings for seller {seller_username}: {total} (sampling {sample_limit})")

            sample: list[ItemSummary] = []
            if sample_limit > 0:
                sample = await self.inventory.seller_listings(seller_username, sample_limit)
        except ExternalServiceError as e:
            logger.warning(f"Error sampling listings for {seller_username}: {e}")
            assessment = SellerAssessment(
                seller_username=seller_username,
                sample_size=0,
                match_count=0,
                ratio=0.0,
                exclude=True,
                error=True,
                error_message=str(e),
            )
            metrics.seller_assessments_total.labels(decision=assessment.decision).inc()
            return assessment

        assessment = compute_assessment(
            seller_username,
            [item.title for item in sample[:sample_limit]],
            typical_phrases,
        )
        logger.info(
            f"{'EXCLUDING' if assessment.exclude else 'INCLUDING'} {seller_username}: "
            f"{assessment.match_count}/{assessment.sample_size} sampled listings match "
            f"({assessment.ratio:.2f}%)"
        )
        metrics.seller_assessments_total.labels(decision=assessment.decision).inc()
        return assessment
