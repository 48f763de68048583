"""
Database schema and connection management.

Uses SQLite with SQLAlchemy for onboarding records, idempotency entries
and the audit trail. All writes go through session_scope(), which commits
on a clean exit and rolls back on any other.
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()


class IdentityStatus:
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class ResidenceStatus:
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class OverallStatus:
    CREATED = "created"
    FAILED = "failed"


class EntryState:
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_RECORD_CLAUSE = "overall_status IS NULL OR overall_status = 'created'"


class OnboardingRecord(Base):
    """One logical customer-creation attempt."""

    __tablename__ = "onboarding_records"

    reference_id = Column(String, primary_key=True)
    customer_id = Column(String, nullable=False, index=True)
    request_id = Column(String, nullable=False, unique=True)

    full_name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    mobile = Column(String, nullable=False)
    tax_id = Column(String, nullable=False)
    date_of_birth = Column(String, nullable=False)

    address_line1 = Column(String, nullable=False)
    address_line2 = Column(String, nullable=True)
    city = Column(String, nullable=False)
    state = Column(String, nullable=False)
    postal_code = Column(String, nullable=False)
    country = Column(String, nullable=True)

    identity_status = Column(String, nullable=False, default=IdentityStatus.PENDING)
    residence_status = Column(String, nullable=False, default=ResidenceStatus.PENDING)
    overall_status = Column(String, nullable=True)  # NULL while in flight
    identity_reference = Column(String, nullable=True)
    residence_reference = Column(String, nullable=True)
    identity_risk_score = Column(Float, nullable=True)
    residence_confidence = Column(Float, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)
    finalized_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # A customer may only have one in-flight or created onboarding.
        Index(
            "uq_onboarding_active_customer",
            "customer_id",
            unique=True,
            sqlite_where=text(ACTIVE_RECORD_CLAUSE),
            postgresql_where=text(ACTIVE_RECORD_CLAUSE),
        ),
    )

    @property
    def is_final(self) -> bool:
        return self.overall_status is not None


class IdempotencyEntry(Base):
    """Dedup guard and response cache for one caller-supplied request id."""

    __tablename__ = "idempotency_entries"

    request_id = Column(String, primary_key=True)
    request_fingerprint = Column(String(64), nullable=False)
    state = Column(String, nullable=False, default=EntryState.IN_PROGRESS)
    result_payload = Column(Text, nullable=True)
    result_status_code = Column(Integer, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    updated_at = Column(DateTime, nullable=False, default=datetime.now, onupdate=datetime.now)


class AuditEvent(Base):
    """Append-only lifecycle event for an onboarding record."""

    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reference_id = Column(
        String, ForeignKey("onboarding_records.reference_id"), nullable=False, index=True
    )
    event = Column(String, nullable=False)
    payload = Column(Text, nullable=False)  # redacted JSON snapshot
    created_at = Column(DateTime, nullable=False, default=datetime.now)


_engines: Dict[str, Engine] = {}
_engines_lock = threading.Lock()


def get_engine(db_path: Path) -> Engine:
    """
    Return the shared engine for a SQLite file, creating it on first use.

    Args:
        db_path: Path to SQLite database file
    """
    key = str(Path(db_path).resolve())
    with _engines_lock:
        engine = _engines.get(key)
        if engine is None:
            engine = create_engine(
                f"sqlite:///{key}",
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            _engines[key] = engine
        return engine


def dispose_engines() -> None:
    """Close pooled connections for every engine (tests and shutdown)."""
    with _engines_lock:
        for engine in _engines.values():
            engine.dispose()
        _engines.clear()


def init_database(db_path: Path) -> None:
    """
    Initialize database and create tables.

    Args:
        db_path: Path to SQLite database file
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(get_engine(db_path))


def get_session(db_path: Path) -> Session:
    """
    Get database session.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLAlchemy session
    """
    factory = sessionmaker(bind=get_engine(db_path), expire_on_commit=False)
    return factory()


@contextmanager
def session_scope(db_path: Path) -> Iterator[Session]:
    """
    Scoped transaction: commit on clean exit, roll back on any exception.

    Example:
        with session_scope(db_path) as session:
            session.add(record)
    """
    session = get_session(db_path)
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()
