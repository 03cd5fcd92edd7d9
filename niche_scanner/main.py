"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from niche_scanner.api.routes import scans, searches
from niche_scanner.config import settings
from niche_scanner.db.ledger import ResultLedger
from niche_scanner.db.models import Base
from niche_scanner.db.session import AsyncSessionLocal, engine
from niche_scanner.detect.qualifier import SellerQualifier
from niche_scanner.ingest.auth import EbayTokenProvider
from niche_scanner.ingest.ebay import EbayApi
from niche_scanner.ingest.http_client import MarketplaceClient
from niche_scanner.ingest.phrase_fetcher import PhraseListingFetcher
from niche_scanner.notify.exporter import CsvExporter, NullExporter
from niche_scanner.worker.scanner import ScanOrchestrator
from niche_scanner.worker.scheduler import setup_scheduler
from niche_scanner.worker.tasks import TaskRunner

# Configure structured logging
from niche_scanner.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting Niche Scanner...")

    # Initialize database
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    client = MarketplaceClient()
    api = EbayApi(client)
    ledger = ResultLedger(AsyncSessionLocal)
    exporter = CsvExporter(settings.export_dir) if settings.export_enabled else NullExporter()

    orchestrator = ScanOrchestrator(
        fetcher=PhraseListingFetcher(api, SellerQualifier(api)),
        ledger=ledger,
        token_provider=EbayTokenProvider(client),
        exporter=exporter,
    )
    task_runner = TaskRunner(orchestrator, ledger)

    app.state.ledger = ledger
    app.state.orchestrator = orchestrator
    app.state.task_runner = task_runner

    # Start scheduler
    scheduler = setup_scheduler(task_runner)
    scheduler.start()
    logger.info("Scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    scheduler.shutdown()
    await client.close()
    await engine.dispose()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Niche Scanner",
    description="Find marketplace listings from small niche sellers",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/health"],
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(scans.router)
app.include_router(searches.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run(
        "niche_scanner.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
