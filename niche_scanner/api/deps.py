"""FastAPI dependencies.

Components are built once in the application lifespan and kept on
app.state; routes reach them through these functions so tests can swap
them with app.dependency_overrides.
"""

from fastapi import Request

from niche_scanner.db.ledger import ResultLedger
from niche_scanner.worker.scanner import ScanOrchestrator
from niche_scanner.worker.tasks import TaskRunner


def get_orchestrator(request: Request) -> ScanOrchestrator:
    """Dependency for the scan orchestrator."""
    return request.app.state.orchestrator


def get_ledger(request: Request) -> ResultLedger:
    """Dependency for the result ledger."""
    return request.app.state.ledger


def get_task_runner(request: Request) -> TaskRunner:
    """Dependency for the saved-search task runner."""
    return request.app.state.task_runner
