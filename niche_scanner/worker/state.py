"""Scan state owned by the orchestrator."""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from niche_scanner.ingest.ebay import ItemSummary


class ScanStatus(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class ScanProgress:
    """Tracks progress of the running scan."""

    current_phrase: str = ""
    current_phrase_index: int = 0
    total_phrases: int = 0
    completed_phrases: int = 0
    sellers_processed: int = 0
    total_sellers: int = 0
    qualified_sellers: int = 0

    def start_phrase(self, phrase: str, index: int, total: int) -> None:
        self.current_phrase = phrase
        self.current_phrase_index = index
        self.total_phrases = total
        self.sellers_processed = 0
        self.total_sellers = 0

    @property
    def progress_percent(self) -> float:
        if self.total_phrases == 0:
            return 0.0
        done = float(self.completed_phrases)
        # partial credit for the phrase in flight
        if self.completed_phrases < self.current_phrase_index and self.total_sellers:
            done += self.sellers_processed / self.total_sellers
        return min(done / self.total_phrases * 100, 100.0)


@dataclass
class ScanState:
    """
    One per orchestrator, created idle.

    Only the orchestrator mutates it; everyone else reads a snapshot.
    """

    status: ScanStatus = ScanStatus.IDLE
    listings: list[ItemSummary] = field(default_factory=list)
    error: Optional[str] = None
    last_updated: Optional[datetime] = None
    in_progress: bool = False
    progress: ScanProgress = field(default_factory=ScanProgress)
    log_messages: list[str] = field(default_factory=list)

    def snapshot(self) -> "ScanState":
        return copy.deepcopy(self)
