"""
Pytest configuration and shared fixtures.
"""

import threading
from pathlib import Path
from typing import Any, Dict, List

import pytest

from kycflow.clients import OutcomeKind, VerificationOutcome
from kycflow.config import BreakerSettings, RetrySettings
from kycflow.database import dispose_engines, init_database
from kycflow.orchestrator import OnboardingOrchestrator
from kycflow.retry import CircuitBreaker, ResilientVerifier
from kycflow.schema import CreateOnboardingRequest


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedVerifier:
    """
    Stand-in for a verification client.

    Returns the scripted outcomes in order and repeats the last one once
    the script runs out. Records every payload it receives.
    """

    def __init__(self, *outcomes: VerificationOutcome):
        self.outcomes = list(outcomes)
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def __call__(self, payload: Dict[str, Any]) -> VerificationOutcome:
        with self._lock:
            self.calls.append(payload)
            index = min(len(self.calls), len(self.outcomes)) - 1
            outcome = self.outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def passed(reference_id="idv-1", risk=0.1):
    return VerificationOutcome(OutcomeKind.SUCCESS, "passed", risk, reference_id)


def identity_failed(reference_id="idv-2", risk=0.9):
    return VerificationOutcome(OutcomeKind.REJECTED, "failed", risk, reference_id, "identity verification failed")


def verified(confidence=0.95, reference_id="res-1"):
    return VerificationOutcome(OutcomeKind.SUCCESS, "verified", confidence, reference_id)


def residence_failed(confidence=0.5, reference_id="res-2"):
    return VerificationOutcome(OutcomeKind.REJECTED, "failed", confidence, reference_id, "low confidence")


def timeout():
    return VerificationOutcome.transient("timeout")


@pytest.fixture
def db_path(tmp_path) -> Path:
    """Initialized temporary SQLite database."""
    path = tmp_path / "kycflow.db"
    init_database(path)
    yield path
    dispose_engines()


@pytest.fixture
def valid_request_data() -> Dict[str, Any]:
    return {
        "customer_id": "CUST-0001",
        "full_name": "Asha  Verma",
        "email": "Asha.Verma@Example.com",
        "mobile": "+91 98765 43210",
        "tax_id": "abcde1234f",
        "date_of_birth": "1990-04-12",
        "address_line1": "12 MG Road",
        "address_line2": "Flat 4B",
        "city": "Pune",
        "state": "Maharashtra",
        "postal_code": "411001",
        "country": "IN",
    }


@pytest.fixture
def sample_request(valid_request_data) -> CreateOnboardingRequest:
    return CreateOnboardingRequest.from_dict(valid_request_data)


@pytest.fixture
def fast_retry() -> RetrySettings:
    return RetrySettings(max_attempts=3, base_delay=0.01, max_delay=0.05, jitter=0.0)


@pytest.fixture
def make_verifier(fast_retry):
    """Build a ResilientVerifier around a scripted call with no real sleeping."""

    def _make(call, service="identity", retry=None, breaker_settings=None, clock=None):
        breaker = CircuitBreaker(
            breaker_settings or BreakerSettings(failure_rate_threshold=1.0, sliding_window_size=50),
            name=service,
            clock=clock or FakeClock(),
        )
        return ResilientVerifier(
            call,
            service,
            retry=retry or fast_retry,
            breaker=breaker,
            sleep=lambda _delay: None,
        )

    return _make


@pytest.fixture
def make_orchestrator(db_path, make_verifier):
    """Orchestrator over the temp database with scripted partners."""

    def _make(identity_script, residence_script, **kwargs):
        return OnboardingOrchestrator(
            db_path,
            make_verifier(identity_script, "identity"),
            make_verifier(residence_script, "residence"),
            **kwargs,
        )

    return _make
