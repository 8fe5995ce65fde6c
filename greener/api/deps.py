"""FastAPI dependencies."""

from greener.db.session import AsyncSessionLocal
from greener.estimate.client import CarbonEstimationClient
from greener.estimate.store import EstimateStore
from greener.worker.tasks import TaskRunner, task_runner


def get_store() -> EstimateStore:
    """Dependency for the estimate store."""
    return EstimateStore(AsyncSessionLocal)


def get_estimation_client() -> CarbonEstimationClient:
    """Dependency for the LLM estimation client."""
    return CarbonEstimationClient()


def get_task_runner() -> TaskRunner:
    """Dependency for the background task runner."""
    return task_runner
