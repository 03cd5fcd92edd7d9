"""Saved search API endpoints."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict

from niche_scanner.api.deps import get_ledger, get_task_runner
from niche_scanner.db.ledger import ResultLedger
from niche_scanner.exceptions import ConflictError, PersistenceError, ValidationError
from niche_scanner.worker.scanner import validate_scan_params
from niche_scanner.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/saves", tags=["saved searches"])


class SavedSearchCreate(BaseModel):
    """Request model for saving a search."""
    name: str
    search_phrases: List[str]
    typical_phrases: List[str]
    feedback_threshold: int
    conditions: List[str]


class SavedSearchCreated(BaseModel):
    message: str
    id: int


class SavedSearchResponse(BaseModel):
    """Response model for a saved search."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    search_phrases: List[str]
    typical_phrases: List[str]
    feedback_threshold: int
    conditions: List[str]
    created_at: datetime


class DiscoveredItemResponse(BaseModel):
    """Response model for a discovered item."""
    model_config = ConfigDict(from_attributes=True)

    item_id: str
    title: str
    price: Optional[Decimal]
    currency: Optional[str]
    url: Optional[str]
    seller_id: Optional[str]
    first_found_at: datetime
    last_seen_at: datetime
    is_active: bool


class ScanAcceptedResponse(BaseModel):
    message: str
    search_id: int


def _storage_failure(e: PersistenceError) -> HTTPException:
    logger.error(f"Storage failure: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Storage failure",
    )


@router.post(
    "/search",
    response_model=SavedSearchCreated,
    status_code=status.HTTP_201_CREATED,
)
async def save_search(
    search: SavedSearchCreate,
    ledger: ResultLedger = Depends(get_ledger),
):
    """Save a search configuration for later runs."""
    name = search.name.strip()
    if not name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="name must not be empty")

    try:
        params = validate_scan_params(
            search.search_phrases,
            search.typical_phrases,
            search.feedback_threshold,
            search.conditions,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        search_id = await ledger.save_search_config(
            name,
            params.search_phrases,
            params.typical_phrases,
            params.feedback_threshold,
            sorted(params.condition_whitelist),
        )
    except PersistenceError as e:
        raise _storage_failure(e)

    return SavedSearchCreated(message="Search saved successfully", id=search_id)


@router.get("/searches", response_model=List[SavedSearchResponse])
async def list_searches(ledger: ResultLedger = Depends(get_ledger)):
    """List saved searches, newest first."""
    try:
        return await ledger.list_search_configs()
    except PersistenceError as e:
        raise _storage_failure(e)


@router.get("/search/{search_id}", response_model=SavedSearchResponse)
async def get_search(search_id: int, ledger: ResultLedger = Depends(get_ledger)):
    """Get a saved search."""
    try:
        search = await ledger.get_search_config(search_id)
    except PersistenceError as e:
        raise _storage_failure(e)

    if search is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Search not found")
    return search


@router.get("/search/{search_id}/results", response_model=List[DiscoveredItemResponse])
async def get_search_results(search_id: int, ledger: ResultLedger = Depends(get_ledger)):
    """Get every active item a saved search has found."""
    try:
        return await ledger.all_results_for_search(search_id)
    except PersistenceError as e:
        raise _storage_failure(e)


@router.post(
    "/search/{search_id}/scan",
    response_model=ScanAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def run_search(
    search_id: int,
    background_tasks: BackgroundTasks,
    ledger: ResultLedger = Depends(get_ledger),
    task_runner: TaskRunner = Depends(get_task_runner),
):
    """Run a saved search in the background."""
    try:
        search = await ledger.get_search_config(search_id)
    except PersistenceError as e:
        raise _storage_failure(e)

    if search is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Search not found")

    try:
        scan = task_runner.claim_saved_search(search)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    background_tasks.add_task(task_runner.run_claimed, scan)
    return ScanAcceptedResponse(message="Scan started successfully", search_id=search_id)
