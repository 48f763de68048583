"""kycflow: idempotent customer onboarding orchestrator."""

__version__ = "0.1.0"
