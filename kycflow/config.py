"""
Runtime configuration.

Settings are plain dataclasses built once (usually via Settings.from_env())
and passed explicitly to the components that need them. Nothing in the
package reads configuration from module-level state.
"""

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


@dataclass(frozen=True)
class RetrySettings:
    """Retry budget for one verification service."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0
    jitter: float = 0.5  # fraction of each delay that may be randomly removed

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")


@dataclass(frozen=True)
class BreakerSettings:
    """
    Circuit breaker thresholds for one verification service.

    The breaker opens once the window holds at least minimum_calls results
    and the failure rate is at or above failure_rate_threshold. Left unset,
    minimum_calls is failure_rate_threshold * sliding_window_size (rounded
    up), so with the defaults five straight failures open the circuit
    without waiting for ten calls.
    """

    failure_rate_threshold: float = 0.5
    sliding_window_size: int = 10
    minimum_calls: Optional[int] = None
    open_duration: float = 30.0

    def __post_init__(self):
        if not 0.0 < self.failure_rate_threshold <= 1.0:
            raise ValueError("failure_rate_threshold must be in (0, 1]")
        if self.sliding_window_size < 1:
            raise ValueError("sliding_window_size must be >= 1")

    @property
    def effective_minimum_calls(self) -> int:
        if self.minimum_calls is None:
            # round() keeps 0.7 * 10 from ceiling to 8
            return max(1, math.ceil(round(self.failure_rate_threshold * self.sliding_window_size, 9)))
        return max(1, min(self.minimum_calls, self.sliding_window_size))


@dataclass(frozen=True)
class ServiceSettings:
    """Endpoint plus resilience settings for one verification partner."""

    base_url: str
    path: str
    api_key: Optional[str] = None
    timeout: float = 5.0
    retry: RetrySettings = field(default_factory=RetrySettings)
    breaker: BreakerSettings = field(default_factory=BreakerSettings)

    @property
    def url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.path.lstrip('/')}"

    @classmethod
    def from_env(cls, prefix: str, default_url: str, default_path: str) -> "ServiceSettings":
        """Read KYCFLOW_<PREFIX>_* variables."""
        p = f"KYCFLOW_{prefix}_"
        return cls(
            base_url=os.getenv(p + "URL", default_url),
            path=os.getenv(p + "PATH", default_path),
            api_key=os.getenv(p + "API_KEY") or None,
            timeout=_env_float(p + "TIMEOUT", 5.0),
            retry=RetrySettings(
                max_attempts=_env_int(p + "MAX_ATTEMPTS", 3),
                base_delay=_env_float(p + "BACKOFF_BASE", 0.5),
                max_delay=_env_float(p + "BACKOFF_CAP", 8.0),
                jitter=_env_float(p + "BACKOFF_JITTER", 0.5),
            ),
            breaker=BreakerSettings(
                failure_rate_threshold=_env_float(p + "FAILURE_RATE", 0.5),
                sliding_window_size=_env_int(p + "WINDOW_SIZE", 10),
                minimum_calls=_env_int(p + "MINIMUM_CALLS", 0) or None,
                open_duration=_env_float(p + "OPEN_SECONDS", 30.0),
            ),
        )


@dataclass(frozen=True)
class Settings:
    """Top-level configuration for the orchestrator and CLI."""

    db_path: Path = Path("data/kycflow.db")
    identity: ServiceSettings = field(
        default_factory=lambda: ServiceSettings("http://localhost:8081", "/v1/identity/verify")
    )
    residence: ServiceSettings = field(
        default_factory=lambda: ServiceSettings("http://localhost:8082", "/v1/residence/verify")
    )
    residence_confidence_threshold: float = 0.8
    # Seconds after which an in_progress entry is treated as abandoned.
    # None disables reclaiming.
    stale_in_progress_after: Optional[float] = None
    max_workers: int = 8
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "Settings":
        stale = os.getenv("KYCFLOW_STALE_IN_PROGRESS_SECONDS")
        log_dir = os.getenv("KYCFLOW_LOG_DIR")
        return cls(
            db_path=Path(os.getenv("KYCFLOW_DB_PATH", "data/kycflow.db")),
            identity=ServiceSettings.from_env(
                "IDENTITY", "http://localhost:8081", "/v1/identity/verify"
            ),
            residence=ServiceSettings.from_env(
                "RESIDENCE", "http://localhost:8082", "/v1/residence/verify"
            ),
            residence_confidence_threshold=_env_float(
                "KYCFLOW_RESIDENCE_CONFIDENCE_THRESHOLD", 0.8
            ),
            stale_in_progress_after=float(stale) if stale else None,
            max_workers=_env_int("KYCFLOW_MAX_WORKERS", 8),
            log_level=os.getenv("KYCFLOW_LOG_LEVEL", "INFO"),
            log_dir=Path(log_dir) if log_dir else None,
        )
