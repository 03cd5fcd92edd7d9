"""Scan API endpoints."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel

from niche_scanner.api.deps import get_orchestrator, get_task_runner
from niche_scanner.exceptions import ConflictError, ValidationError
from niche_scanner.ingest.conditions import EBAY_CONDITIONS
from niche_scanner.ingest.ebay import ItemSummary
from niche_scanner.worker.scanner import ScanOrchestrator
from niche_scanner.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["scans"])


# Request/response models
class StartScanRequest(BaseModel):
    """Request model for starting an ad-hoc scan."""
    search_phrases: List[str]
    typical_phrases: List[str]
    feedback_threshold: int
    conditions: List[str]


class ScanAcceptedResponse(BaseModel):
    message: str


class ListingResponse(BaseModel):
    """A qualifying listing as shown to the user."""
    title: str
    price: str
    currency: str
    seller: str
    feedbackScore: str
    link: str


class ScanProgressResponse(BaseModel):
    current_phrase: str
    current_phrase_index: int
    total_phrases: int
    completed_phrases: int
    sellers_processed: int
    total_sellers: int
    qualified_sellers: int
    progress_percent: float


class ScanResultsResponse(BaseModel):
    """Snapshot of the current or last scan."""
    status: str
    last_updated: Optional[datetime]
    total_listings: int
    listings: List[ListingResponse]
    error: Optional[str]
    log_messages: List[str]
    progress: ScanProgressResponse


class ConditionResponse(BaseModel):
    id: str
    name: str
    variants: List[str]


def listing_response(item: ItemSummary) -> ListingResponse:
    """Present a listing with placeholders for missing fields."""
    return ListingResponse(
        title=item.title or "N/A",
        price=f"{item.price:.2f}" if item.price is not None else "N/A",
        currency=item.currency or "USD",
        seller=item.seller_username or "N/A",
        feedbackScore=str(item.seller_feedback_score),
        link=item.url or "#",
    )


@router.post(
    "/scan",
    response_model=ScanAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_scan(
    request: StartScanRequest,
    background_tasks: BackgroundTasks,
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    task_runner: TaskRunner = Depends(get_task_runner),
):
    """
    Start a scan in the background.

    The scan is claimed before responding, so a concurrent request gets 409
    rather than a second background run.
    """
    try:
        scan = orchestrator.claim(
            request.search_phrases,
            request.typical_phrases,
            request.feedback_threshold,
            request.conditions,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    background_tasks.add_task(task_runner.run_claimed, scan)
    logger.info(f"Scan accepted for {len(scan.search_phrases)} phrases")
    return ScanAcceptedResponse(message="Scan started successfully")


@router.get("/results", response_model=ScanResultsResponse)
async def get_results(orchestrator: ScanOrchestrator = Depends(get_orchestrator)):
    """Get the state of the current or last scan."""
    state = orchestrator.snapshot()
    progress = state.progress

    return ScanResultsResponse(
        status=state.status.value,
        last_updated=state.last_updated,
        total_listings=len(state.listings),
        listings=[listing_response(item) for item in state.listings],
        error=state.error,
        log_messages=state.log_messages,
        progress=ScanProgressResponse(
            current_phrase=progress.current_phrase,
            current_phrase_index=progress.current_phrase_index,
            total_phrases=progress.total_phrases,
            completed_phrases=progress.completed_phrases,
            sellers_processed=progress.sellers_processed,
            total_sellers=progress.total_sellers,
            qualified_sellers=progress.qualified_sellers,
            progress_percent=progress.progress_percent,
        ),
    )


@router.get("/conditions", response_model=dict[str, ConditionResponse])
async def get_conditions():
    """Get the supported listing conditions."""
    return {
        key: ConditionResponse(id=c.id, name=c.name, variants=list(c.variants))
        for key, c in EBAY_CONDITIONS.items()
    }
