"""
Bounded pool for running independent onboarding requests concurrently.

Each submitted request runs start to finish on one worker thread.
Cancelling the returned future only prevents a request that has not
started yet; work already in flight always runs to a terminal state.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Iterable, List, Tuple

from .logger import get_logger
from .orchestrator import OnboardingOrchestrator, OnboardingResponse
from .schema import CreateOnboardingRequest

logger = get_logger()


class OnboardingWorkerPool:
    def __init__(self, orchestrator: OnboardingOrchestrator, max_workers: int = 8):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.orchestrator = orchestrator
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="kycflow-worker"
        )

    def submit(self, request: CreateOnboardingRequest, request_id: str) -> "Future[OnboardingResponse]":
        return self._executor.submit(self.orchestrator.create, request, request_id)

    def run_all(
        self, items: Iterable[Tuple[CreateOnboardingRequest, str]]
    ) -> List["Future[OnboardingResponse]"]:
        """Submit every (request, request_id) pair; results keep input order."""
        futures = [self.submit(request, request_id) for request, request_id in items]
        logger.debug(f"Submitted {len(futures)} onboarding requests", workers=self.max_workers)
        return futures

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown(wait=True)
        return False
