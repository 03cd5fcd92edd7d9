"""Export of completed scan results.

The orchestrator only knows the ScanExporter protocol; which exporter is
wired in is decided at startup from settings.
"""

import asyncio
import csv
import logging
from pathlib import Path
from typing import Optional, Protocol, Sequence

from niche_scanner.ingest.ebay import ItemSummary
from niche_scanner.utils.time import utcnow

logger = logging.getLogger(__name__)

CSV_COLUMNS = ["title", "price", "currency", "seller", "feedbackScore", "link"]


class ScanExporter(Protocol):
    async def export(self, listings: Sequence[ItemSummary], label: str) -> Optional[Path]: ...


def listing_to_row(item: ItemSummary) -> dict[str, str]:
    """Flatten a listing into a CSV row."""
    return {
        "title": item.title,
        "price": "" if item.price is None else f"{item.price:.2f}",
        "currency": item.currency or "",
        "seller": item.seller_username or "",
        "feedbackScore": str(item.seller_feedback_score),
        "link": item.url or "",
    }


class CsvExporter:
    """Writes scan results to timestamped CSV files."""

    def __init__(self, export_dir: str | Path):
        self.export_dir = Path(export_dir)

    def _write(self, path: Path, listings: Sequence[ItemSummary]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=CSV_COLUMNS)
            writer.writeheader()
            for item in listings:
                writer.writerow(listing_to_row(item))

    async def export(self, listings: Sequence[ItemSummary], label: str) -> Optional[Path]:
        """
        Write listings to `{export_dir}/{label}-results-{timestamp}.csv`.

        Args:
            listings: Listings to export
            label: Prefix for the file name

        Returns:
            Path of the written file
        """
        timestamp = utcnow().strftime("%Y%m%dT%H%M%S")
        path = self.export_dir / f"{label}-results-{timestamp}.csv"
        await asyncio.to_thread(self._write, path, list(listings))
        logger.info(f"Exported {len(listings)} listings to {path}")
        return path


class NullExporter:
    """Exporter used when export is disabled."""

    async def export(self, listings: Sequence[ItemSummary], label: str) -> Optional[Path]:
        return None
