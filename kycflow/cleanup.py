"""
Cleanup of abandoned in-flight requests.

An entry left in_progress by a crashed worker blocks its request id with
ConcurrentDuplicate forever. Reaping marks such entries failed (without a
payload) so the next resubmission re-executes the whole flow.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from .database import session_scope
from .idempotency import IdempotencyStore
from .logger import get_logger

logger = get_logger()


def reap_stale_entries(db_path: Path, older_than: float, now: Optional[datetime] = None) -> int:
    """
    Mark in_progress entries not updated for `older_than` seconds as failed.

    Args:
        db_path: Path to SQLite database file
        older_than: Age threshold in seconds
        now: Reference time (defaults to datetime.now())

    Returns:
        Number of entries reaped
    """
    if older_than <= 0:
        raise ValueError("older_than must be positive")

    cutoff = (now or datetime.now()) - timedelta(seconds=older_than)
    with session_scope(db_path) as session:
        reaped = IdempotencyStore().reap_stale(session, cutoff)

    if reaped:
        logger.warning(
            f"Reaped {reaped} stale in-progress requests",
            cutoff=cutoff.isoformat(),
            older_than_seconds=older_than,
        )
    else:
        logger.debug("No stale in-progress requests", cutoff=cutoff.isoformat())
    return reaped
